"""
AgentPlatform - the composition root.

Holds the registries, the engine adapter, the dispatcher and the backend
clients, and hosts every registered workflow on one Durable Task worker.

Components:
- DTS Worker: runs the orchestrators of all registered agents and the
  dispatcher activities (background thread)
- DTS Client: starts workflows, posts inbox messages and reads status
- Backend: documents, knowledge and outbound messages over HTTP
- Webhook app: Starlette routes forwarding to built-in workflows
"""

import asyncio
import logging
import threading
from typing import Optional

import httpx
import uvicorn
from durabletask import client, worker
from starlette.applications import Starlette

from .agent import Agent
from .backend import (
    BackendClient,
    DocumentService,
    KnowledgeCache,
    KnowledgeService,
    MessageService,
    UsageService,
    register_backend_operations,
)
from .builtin import COMPLETE_SIGNAL, INBOUND_SIGNAL, BuiltinWorkflow
from .config import AgentSettings
from .dispatch import ActivityOptions, ContextAwareExecutor, OperationRegistry
from .engine import Engine
from .logging import build_formatter, configure_logging
from .messaging import MessageEnvelope
from .naming import TASK_WORKFLOW_NAME, AgentIdentity, ScopingMode
from .registry import AgentRegistry, BuiltIn
from .rpc import WorkflowRpc, register_engine_operations
from .subworkflows import SubWorkflowLauncher
from .tasks import task_workflow
from .webhooks import create_webhook_app
from .workflow import host_orchestrator

logger = logging.getLogger(__name__)


class AgentPlatform:
    """
    Register agents and run them on the Durable Task Scheduler.

        platform = AgentPlatform(dts_host="localhost:8080", taskhub="default")
        agent = platform.register_agent("Support", tenant_id="contoso")

        @agent.on_chat
        def answer(ctx):
            ctx.reply("Hi!")

        platform.run()  # Starts the webhook server + DTS worker

    Args:
        settings: Settings to use instead of reading the environment
        dts_host: DTS backend address, overrides DTS_HOST
        taskhub: DTS task hub name, overrides DTS_TASKHUB
        server_url: Backend API URL, overrides SERVER_URL
        api_key: Backend API key, overrides API_KEY
        dts_client: An existing TaskHubGrpcClient to use
        backend_transport: httpx transport for the backend client
        configure_logs: Install the root log handler from settings
    """

    def __init__(
        self,
        settings: Optional[AgentSettings] = None,
        *,
        dts_host: Optional[str] = None,
        taskhub: Optional[str] = None,
        server_url: Optional[str] = None,
        api_key: Optional[str] = None,
        dts_client: Optional[client.TaskHubGrpcClient] = None,
        backend_transport: Optional[httpx.BaseTransport] = None,
        configure_logs: bool = True,
    ):
        overrides = {
            "dts_host": dts_host,
            "taskhub": taskhub,
            "server_url": server_url,
            "api_key": api_key,
        }
        settings = settings or AgentSettings()
        self.settings = settings.model_copy(
            update={key: value for key, value in overrides.items() if value is not None}
        )

        self._log_handler: Optional[logging.Handler] = None
        self._log_formatter = build_formatter(self.settings.log_format)
        if configure_logs:
            self._log_handler = configure_logging(self.settings.log_level, self.settings.log_format)

        self.engine = Engine(
            self.settings.dts_host,
            self.settings.taskhub,
            secure_channel=self.settings.secure_channel,
            poll_interval=self.settings.rpc_poll_interval_seconds,
            log_handler=self._log_handler,
            log_formatter=self._log_formatter,
            dts_client=dts_client,
        )
        self.registry = AgentRegistry()
        self.operations = OperationRegistry()
        self.executor = ContextAwareExecutor(
            self.operations, ActivityOptions.from_settings(self.settings)
        )
        self.rpc = WorkflowRpc(
            self.registry, self.executor, self.engine, self.settings.rpc_timeout_seconds
        )
        self.launcher = SubWorkflowLauncher(
            self.rpc, self.engine, self.settings.rpc_timeout_seconds
        )

        self.backend = BackendClient(
            self.settings.server_url,
            self.settings.api_key,
            timeout=self.settings.http_timeout_seconds,
            retries=self.settings.http_retries,
            transport=backend_transport,
        )
        self.document_service = DocumentService(self.backend)
        self.knowledge_service = KnowledgeService(
            self.backend, KnowledgeCache(self.settings.knowledge_cache_ttl_seconds)
        )
        self.message_service = MessageService(self.backend)
        self.usage_service = UsageService(self.backend)

        register_engine_operations(self.operations, self.engine)
        register_backend_operations(
            self.operations,
            self.document_service,
            self.knowledge_service,
            self.message_service,
            self.usage_service,
        )

        self._agents: dict[str, Agent] = {}
        self._worker: Optional[worker.TaskHubGrpcWorker] = None

    @property
    def dts_client(self) -> client.TaskHubGrpcClient:
        """The DTS client for scheduling orchestrations."""
        return self.engine.dts_client

    @property
    def dts_worker(self) -> Optional[worker.TaskHubGrpcWorker]:
        """The DTS worker, once built."""
        return self._worker

    # === Registration ===

    def register_agent(
        self,
        name: str,
        tenant_id: Optional[str] = None,
        *,
        system_scoped: bool = False,
        enable_tasks: bool = True,
    ) -> Agent:
        """
        Register an agent.

        Tenant-scoped agents (the default) serve only ``tenant_id``.
        System-scoped agents serve every tenant from shared task queues.
        """
        scoping = ScopingMode.SYSTEM if system_scoped else ScopingMode.TENANT
        identity = AgentIdentity(name=name, tenant_id=tenant_id, scoping=scoping)
        self.registry.add_agent(identity)
        agent = Agent(self, identity)
        self._agents[name] = agent
        if enable_tasks:
            agent.add_workflow(TASK_WORKFLOW_NAME, task_workflow)
        logger.info("Registered agent %r", agent)
        return agent

    def agent(self, name: str) -> Agent:
        self.registry.entry(name)
        return self._agents[name]

    @property
    def agents(self) -> list[Agent]:
        return list(self._agents.values())

    # === Hosting ===

    def orchestrators(self) -> list:
        """One orchestrator per registered workflow, named by its task queue."""
        hosted = []
        for definition in self.registry.definitions():
            if isinstance(definition.kind, BuiltIn):
                body = BuiltinWorkflow(definition.kind.handlers, self.settings.max_events_per_run)
            else:
                body = definition.kind.body
            hosted.append(
                host_orchestrator(
                    definition, body, self.executor, self.settings.max_tracked_responses
                )
            )
        return hosted

    def activities(self) -> dict:
        return self.operations.as_activities()

    def build_worker(self) -> worker.TaskHubGrpcWorker:
        if self._worker is not None:
            return self._worker
        dts_worker = worker.TaskHubGrpcWorker(
            host_address=self.settings.dts_host,
            metadata=self.engine.metadata,
            secure_channel=self.settings.secure_channel,
            log_handler=self._log_handler,
            log_formatter=self._log_formatter,
        )
        for orchestrator in self.orchestrators():
            dts_worker.add_orchestrator(orchestrator)
        for activity in self.activities().values():
            dts_worker.add_activity(activity)
        self._worker = dts_worker
        return dts_worker

    def start_worker(self, blocking: bool = False):
        """
        Start the DTS worker.

        Args:
            blocking: If True, runs on the calling thread. If False (default), runs in background thread.
        """
        dts_worker = self.build_worker()
        if blocking:
            self._start_worker_internal(dts_worker)
        else:
            threading.Thread(
                target=self._start_worker_internal, args=(dts_worker,), daemon=True
            ).start()

    def _start_worker_internal(self, dts_worker: worker.TaskHubGrpcWorker):
        logger.info(
            "DTS worker connecting to %s (task hub %s) with %d agents",
            self.settings.dts_host,
            self.settings.taskhub,
            len(self._agents),
        )
        dts_worker.start()

    def stop(self) -> None:
        """Stop the worker. Running workflows stay alive in the task hub."""
        if self._worker is not None:
            self._worker.stop()
            self._worker = None
        self.engine.close()
        self.backend.close()

    def send_message(
        self,
        agent_name: str,
        envelope: MessageEnvelope,
        tenant_id: Optional[str] = None,
        workflow_name: Optional[str] = None,
    ):
        """
        Deliver a user message to a built-in workflow, starting it if needed.
        Replies reach the participant through the backend.
        """
        definition = self._builtin(agent_name, workflow_name)
        return self.rpc.send_signal(
            definition,
            INBOUND_SIGNAL,
            envelope.model_dump(mode="json"),
            tenant_id=tenant_id or envelope.tenant_id or None,
            start=True,
        )

    def complete(self, agent_name: str, tenant_id: Optional[str] = None, workflow_name: Optional[str] = None):
        """Signal a built-in workflow to end its message loop."""
        definition = self._builtin(agent_name, workflow_name)
        return self.rpc.send_signal(definition, COMPLETE_SIGNAL, tenant_id=tenant_id)

    def _builtin(self, agent_name: str, workflow_name: Optional[str]):
        if workflow_name:
            return self.registry.workflow(agent_name, workflow_name)
        return self.registry.default_builtin(agent_name)

    # === Serving ===

    def create_app(self) -> Starlette:
        return create_webhook_app(self, timeout=self.settings.rpc_timeout_seconds)

    def run(self, host: str = "0.0.0.0", port: int = 8000):
        """Start the DTS worker and serve webhooks until interrupted."""
        asyncio.run(self._run_async(host, port))

    async def _run_async(self, host: str, port: int):
        self.start_worker()
        app = self.create_app()
        logger.info("Webhooks listening on http://%s:%d/webhooks/{agent}/{webhook}", host, port)
        try:
            await uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_config=None)).serve()
        finally:
            self.stop()

"""
Agents and their workflow registration.

An ``Agent`` is obtained from ``AgentPlatform.register_agent`` and is where
workflows are declared, explicitly, at composition time::

    agent = platform.register_agent("Support", tenant_id="contoso")

    @agent.on_chat
    def answer(ctx):
        ctx.reply(f"You said: {ctx.text}")

    @agent.workflow("Escalation")
    def escalation(wf, ticket):
        ...

It also carries the agent-bound APIs: documents, knowledge, conversations,
usage metrics, tasks, A2A and child workflows.
"""

import logging
from typing import Callable, Optional

from . import context
from .a2a import A2AClient
from .errors import TenantIsolationError, ValidationError
from .metrics import MetricsCollection
from .naming import AgentIdentity, build_workflow_type, builtin_workflow_name
from .registry import BuiltIn, Custom, HandlerTable, WorkflowDefinition
from .stores import ConversationCollection, DocumentCollection, KnowledgeCollection
from .subworkflows import SubWorkflowLauncher
from .tasks import TaskService

logger = logging.getLogger(__name__)


class BuiltinWorkflowBuilder:
    """Collects the handlers of one built-in workflow."""

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition
        self.handlers: HandlerTable = definition.kind.handlers

    def on_chat(self, func: Callable) -> Callable:
        """
        Register the chat handler. It receives a MessageContext and may be a
        generator to call activities or other workflows with ``yield from``.
        """
        self.handlers.chat = func
        return func

    def on_data(self, func: Callable) -> Callable:
        self.handlers.data = func
        return func

    def on_webhook(self, name: str) -> Callable:
        """
        Register a webhook handler, reachable at ``/webhooks/{agent}/{name}``.

        @builtin.on_webhook("github")
        def on_push(request: WebhookRequest):
            return WebhookResponse.ok({"received": True})
        """
        if not name or not name.strip():
            raise ValidationError("Webhook name must not be empty")

        def decorator(func: Callable) -> Callable:
            if name in self.handlers.webhooks:
                raise ValidationError(
                    f"Webhook '{name}' is already registered on {self.definition.workflow_type}"
                )
            self.handlers.webhooks[name] = func
            return func

        return decorator


class Agent:
    def __init__(self, platform, identity: AgentIdentity):
        self._platform = platform
        self.identity = identity
        self._builtins: dict[str, BuiltinWorkflowBuilder] = {}
        self.documents = DocumentCollection(self, platform.executor)
        self.knowledge = KnowledgeCollection(self, platform.executor)
        self.conversations = ConversationCollection(self, platform.executor)
        self.metrics = MetricsCollection(self, platform.executor)
        self.a2a = A2AClient(self, platform.rpc, platform.registry)
        self.workflows: SubWorkflowLauncher = platform.launcher
        self.tasks = TaskService(
            self, platform.registry, platform.rpc, platform.launcher, platform.engine
        )

    @property
    def name(self) -> str:
        return self.identity.name

    @property
    def tenant_id(self) -> Optional[str]:
        return self.identity.tenant_id

    @property
    def system_scoped(self) -> bool:
        return self.identity.system_scoped

    @property
    def default_workflow_type(self) -> str:
        """Workflow type of the default built-in workflow, registered or not."""
        return build_workflow_type(self.name, builtin_workflow_name())

    def __repr__(self) -> str:
        return f"Agent(name={self.name!r}, tenant_id={self.tenant_id!r}, scoping={self.identity.scoping.value!r})"

    # --- registration ---

    def builtin_workflow(self, name: Optional[str] = None) -> BuiltinWorkflowBuilder:
        """
        The built-in workflow named ``name`` (the default one when omitted),
        registered on first use.
        """
        workflow_name = builtin_workflow_name(name)
        builder = self._builtins.get(workflow_name)
        if builder is None:
            definition = self._platform.registry.add_workflow(
                self.name, workflow_name, BuiltIn(HandlerTable())
            )
            builder = BuiltinWorkflowBuilder(definition)
            self._builtins[workflow_name] = builder
        return builder

    def on_chat(self, func: Callable) -> Callable:
        """Register the chat handler of the default built-in workflow."""
        return self.builtin_workflow().on_chat(func)

    def on_data(self, func: Callable) -> Callable:
        return self.builtin_workflow().on_data(func)

    def on_webhook(self, name: str) -> Callable:
        return self.builtin_workflow().on_webhook(name)

    def workflow(self, name: str) -> Callable:
        """
        Register a custom workflow body ``body(wf, *args)``.

        @agent.workflow("Onboarding")
        def onboarding(wf, user):
            yield from wf.sleep(timedelta(days=1))
            return {"welcomed": user}
        """

        def decorator(body: Callable) -> Callable:
            self._platform.registry.add_workflow(self.name, name, Custom(body))
            return body

        return decorator

    def add_workflow(self, name: str, body: Callable) -> WorkflowDefinition:
        return self._platform.registry.add_workflow(self.name, name, Custom(body))

    def definition(self, workflow_name: str) -> WorkflowDefinition:
        return self._platform.registry.workflow(self.name, workflow_name)

    # --- tenants ---

    def current_tenant(self, tenant_id: Optional[str] = None) -> Optional[str]:
        """
        The tenant a call made now acts for: ``tenant_id`` if given, else the
        tenant the running workflow is acting for, else the agent's own tenant.
        """
        if tenant_id:
            return tenant_id
        wf = context.current_workflow()
        if wf is not None and wf.current_tenant_id:
            return wf.current_tenant_id
        return self.identity.tenant_id

    def resolve_tenant(self, tenant_id: Optional[str] = None) -> str:
        """Like current_tenant, but a tenant is required."""
        resolved = self.current_tenant(tenant_id)
        if not resolved:
            raise TenantIsolationError(
                f"Agent '{self.name}' is system-scoped; pass a tenant ID or call from a tenant workflow"
            )
        if not self.system_scoped and resolved != self.identity.tenant_id:
            raise TenantIsolationError(
                f"Agent '{self.name}' belongs to tenant '{self.identity.tenant_id}', not '{resolved}'"
            )
        return resolved

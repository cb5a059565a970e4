"""
Cross-workflow RPC: signals, updates and queries against any hosted workflow.

Targets are a ``WorkflowIdentity``, a ``WorkflowDefinition`` or a raw
``"Agent:Workflow"`` type plus optional ``id_postfix``. Targets are resolved
before anything is sent, so unknown agents and malformed types fail fast.

From client code the calls block and return values. From workflow code they
return generators and must be used with ``yield from``; engine calls are
then made by activities, and update/query responses are pushed back to the
calling workflow as a reply event.
"""

import logging
import uuid
from typing import Optional, Union

from . import context
from .dispatch import ContextAwareExecutor, OperationRegistry
from .engine import Engine
from .errors import HandlerNotFoundError
from .naming import WorkflowIdentity
from .protocol import InboxMessage, MessageKind, WorkflowStart, to_jsonable
from .registry import AgentRegistry, WorkflowDefinition
from .workflow import OP_RAISE_EVENT, as_timedelta

logger = logging.getLogger(__name__)

OP_POST = "dts_agents.engine.post"
OP_START = "dts_agents.engine.start"
OP_READ_STATUS = "dts_agents.engine.read_status"

Target = Union[str, WorkflowDefinition, WorkflowIdentity]


def register_engine_operations(operations: OperationRegistry, engine: Engine) -> None:
    """Register the engine calls workflows make through activities."""

    def post(payload: dict) -> None:
        start = payload.get("start")
        if start:
            engine.start_or_reuse(start["orchestrator"], payload["instance_id"], start.get("input"))
        engine.post(payload["instance_id"], InboxMessage.model_validate(payload["message"]))

    def start(payload: dict) -> bool:
        return engine.start_or_reuse(
            payload["orchestrator"], payload["instance_id"], payload.get("input")
        )

    def raise_event(payload: dict) -> None:
        engine.raise_event(payload["instance_id"], payload["event_name"], payload.get("data"))

    def read_status(payload: dict) -> dict:
        active, status = engine.describe(payload["instance_id"])
        return {"active": active, **status.model_dump(mode="json")}

    operations.register(OP_POST, post, description="Deliver an inbox message to a workflow")
    operations.register(OP_START, start, description="Start a workflow unless it is running")
    operations.register(OP_RAISE_EVENT, raise_event, description="Raise an external event")
    operations.register(OP_READ_STATUS, read_status, description="Read a workflow's published status")


class WorkflowRpc:
    """
    Signal, update and query hosted workflows.

    Args:
        registry: Agent registry used to resolve targets
        executor: Dispatcher that routes engine calls through activities in workflows
        engine: Engine adapter used for blocking client-side waits
        default_timeout: Seconds to wait for update/query responses
    """

    def __init__(
        self,
        registry: AgentRegistry,
        executor: ContextAwareExecutor,
        engine: Engine,
        default_timeout: float = 30.0,
    ):
        self._registry = registry
        self._executor = executor
        self._engine = engine
        self.default_timeout = default_timeout

    def resolve(
        self,
        target: Target,
        *,
        id_postfix: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> tuple[WorkflowDefinition, WorkflowIdentity]:
        if tenant_id is None:
            wf = context.current_workflow()
            tenant_id = wf.current_tenant_id if wf is not None else None
        return self._registry.resolve(target, tenant_id=tenant_id, instance_qualifier=id_postfix)

    def start_input(self, identity: WorkflowIdentity, *args) -> dict:
        wf = context.current_workflow()
        start = WorkflowStart(
            tenant_id=identity.tenant_id,
            args=to_jsonable(list(args)),
            parent_id=wf.workflow_id if wf is not None else None,
        )
        return start.model_dump(mode="json")

    def send_signal(
        self,
        target: Target,
        signal_name: str,
        *args,
        id_postfix: Optional[str] = None,
        tenant_id: Optional[str] = None,
        start: bool = False,
    ):
        """Fire-and-forget. Returns None (a generator inside workflows)."""
        _, identity = self.resolve(target, id_postfix=id_postfix, tenant_id=tenant_id)
        message = InboxMessage(kind=MessageKind.SIGNAL, name=signal_name, args=to_jsonable(list(args)))
        return self._executor.execute(OP_POST, self._post_payload(identity, message, start))

    def update(
        self,
        target: Target,
        update_name: str,
        *args,
        id_postfix: Optional[str] = None,
        tenant_id: Optional[str] = None,
        timeout: Optional[float] = None,
        start: bool = False,
        correlation_id: Optional[str] = None,
    ):
        """
        Send an update and wait for the target to validate and apply it.

        Raises the target's error when it rejects the update, and
        RpcTimeoutError when no answer arrives within ``timeout`` seconds.
        """
        _, identity = self.resolve(target, id_postfix=id_postfix, tenant_id=tenant_id)
        return self._request(
            MessageKind.UPDATE, identity, update_name, args, timeout, start, correlation_id
        )

    def query(
        self,
        target: Target,
        query_name: str,
        *args,
        id_postfix: Optional[str] = None,
        tenant_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """
        Read workflow state. A running workflow answers the query after every
        message sent to it before, so the answer reflects earlier signals. A
        closed workflow is answered from the query snapshot it published last.
        """
        _, identity = self.resolve(target, id_postfix=id_postfix, tenant_id=tenant_id)
        wf = context.current_workflow()
        if wf is not None:
            return self._query_from_workflow(identity, query_name, args, timeout)
        active, status = self._engine.describe(identity.workflow_id)
        if not active:
            return _from_snapshot(identity, status.queries, query_name, args)
        return self._request(MessageKind.QUERY, identity, query_name, args, timeout)

    def _query_from_workflow(self, identity, query_name, args, timeout):
        status = yield from self._executor.execute(
            OP_READ_STATUS, {"instance_id": identity.workflow_id}
        )
        if not status["active"]:
            return _from_snapshot(identity, status.get("queries") or {}, query_name, args)
        return (
            yield from self._request(MessageKind.QUERY, identity, query_name, args, timeout)
        )

    def _request(
        self,
        kind: MessageKind,
        identity: WorkflowIdentity,
        name: str,
        args,
        timeout: Optional[float],
        start: bool = False,
        correlation_id: Optional[str] = None,
    ):
        timeout = self.default_timeout if timeout is None else timeout
        wf = context.current_workflow()
        if correlation_id is None:
            correlation_id = wf.new_id() if wf is not None else str(uuid.uuid4())
        message = InboxMessage(
            kind=kind,
            name=name,
            args=to_jsonable(list(args)),
            correlation_id=correlation_id,
            reply_to=wf.workflow_id if wf is not None else None,
        )
        payload = self._post_payload(identity, message, start)
        if wf is None:
            self._executor.execute(OP_POST, payload)
            response = self._engine.wait_for_response(identity.workflow_id, correlation_id, timeout)
            return response.unwrap()
        return self._request_from_workflow(wf, payload, correlation_id, timeout)

    def _request_from_workflow(self, wf, payload: dict, correlation_id: str, timeout: float):
        yield from self._executor.execute(OP_POST, payload)
        response = yield from wf.wait_for_reply(correlation_id, as_timedelta(timeout))
        return response.unwrap()

    def _post_payload(self, identity: WorkflowIdentity, message: InboxMessage, start: bool) -> dict:
        payload = {"instance_id": identity.workflow_id, "message": message.model_dump(mode="json")}
        if start:
            payload["start"] = {
                "orchestrator": identity.task_queue,
                "input": self.start_input(identity),
            }
        return payload


def _from_snapshot(identity: WorkflowIdentity, queries: dict, query_name: str, args):
    if args or query_name not in queries:
        raise HandlerNotFoundError(
            f"Workflow '{identity.workflow_id}' has closed and published no query '{query_name}'"
        )
    return queries[query_name]

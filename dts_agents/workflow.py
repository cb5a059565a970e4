"""
Workflow host.

``host_orchestrator`` turns a workflow body ``body(wf, *args)`` into a
durabletask orchestrator. The body receives a ``WorkflowContext`` (``wf``)
that adds signal, update and query handlers on top of the raw
orchestration context::

    def approval(wf, request):
        state = {"done": False}

        def approve():
            state["done"] = True

        wf.set_signal_handler("Approve", approve)
        wf.set_query_handler("IsDone", lambda: state["done"])
        approved = yield from wf.wait_condition(lambda: state["done"], timeout=timedelta(days=1))
        return {"approved": approved}

Handlers run one inbox event at a time while the body waits in
``wait_condition``. Handlers may be plain functions or generators (to call
activities with ``yield from``).
"""

import inspect
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

from durabletask import task

from . import context
from .dispatch import named
from .errors import (
    HandlerNotFoundError,
    RpcTimeoutError,
    TenantIsolationError,
    WorkflowNotFoundError,
)
from .logging import ReplayAwareLogger
from .naming import SEPARATOR, AgentIdentity, ScopingMode
from .protocol import (
    INBOX_EVENT,
    InboxMessage,
    MessageKind,
    RpcResponse,
    WorkflowStart,
    reply_event_name,
    to_jsonable,
)

OP_RAISE_EVENT = "dts_agents.engine.raise_event"


def drive(result):
    """``yield from`` a handler result that may or may not be a generator."""
    if inspect.isgenerator(result):
        return (yield from result)
    return result


def then(result, fn: Callable):
    """Apply ``fn`` to a value, or to the eventual value of a generator."""
    if inspect.isgenerator(result):
        return _then(result, fn)
    return fn(result)


def _then(steps, fn: Callable):
    value = yield from steps
    return fn(value)


def completed(value: Any = None):
    """A generator that finishes immediately with ``value``."""
    yield from ()
    return value


def as_timedelta(value: Union[timedelta, float, int]) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


def _callable_without_args(fn: Callable) -> bool:
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return False
    return all(
        param.default is not inspect.Parameter.empty
        or param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)
        for param in signature.parameters.values()
    )


class _UpdateHandler:
    def __init__(self, handler: Callable, validator: Optional[Callable]):
        self.handler = handler
        self.validator = validator


class WorkflowInfo:
    """Who the running workflow is: agent, names, tenant and instance ID."""

    def __init__(
        self,
        agent: AgentIdentity,
        workflow_name: str,
        workflow_type: str,
        task_queue: str,
        workflow_id: str,
        tenant_id: Optional[str],
        parent_id: Optional[str] = None,
    ):
        self.agent = agent
        self.workflow_name = workflow_name
        self.workflow_type = workflow_type
        self.task_queue = task_queue
        self.workflow_id = workflow_id
        self.tenant_id = tenant_id
        self.parent_id = parent_id

    @property
    def agent_name(self) -> str:
        return self.agent.name

    @property
    def scoping(self) -> ScopingMode:
        return self.agent.scoping


class WorkflowContext:
    """Per-instance state and helpers handed to every workflow body."""

    def __init__(
        self,
        ctx: task.OrchestrationContext,
        info: WorkflowInfo,
        executor,
        start: WorkflowStart,
        max_tracked_responses: int = 50,
    ):
        self.ctx = ctx
        self.info = info
        self.executor = executor
        self.start = start
        self.logger = ReplayAwareLogger(
            logging.getLogger(f"dts_agents.workflow.{info.agent_name}"),
            ctx,
            {"workflow_id": info.workflow_id},
        )
        self.events_processed = 0
        self._signals: dict[str, Callable] = {}
        self._updates: dict[str, _UpdateHandler] = {}
        self._queries: dict[str, Callable] = {}
        self._responses: dict[str, dict[str, Any]] = dict(start.carried_responses)
        self._max_tracked_responses = max_tracked_responses
        self._inbox: Optional[task.Task] = None
        self._id_sequence = 0
        self._acting_tenant: Optional[str] = None

    # --- identity and time ---

    @property
    def workflow_id(self) -> str:
        return self.ctx.instance_id

    @property
    def tenant_id(self) -> Optional[str]:
        return self.info.tenant_id

    @property
    def current_tenant_id(self) -> Optional[str]:
        """The tenant being served right now, which may differ from ``tenant_id``."""
        return self._acting_tenant or self.info.tenant_id

    @contextmanager
    def acting_for(self, tenant_id: Optional[str]):
        """
        Act for ``tenant_id`` inside the block. System-scoped instances are
        shared by every tenant, so each message is handled for its sender.
        """
        previous = self._acting_tenant
        self._acting_tenant = tenant_id or previous
        try:
            yield
        finally:
            self._acting_tenant = previous

    @property
    def is_replaying(self) -> bool:
        return self.ctx.is_replaying

    def now(self) -> datetime:
        return self.ctx.current_utc_datetime

    def new_id(self) -> str:
        """A unique ID that is stable across replays of this orchestration."""
        self._id_sequence += 1
        seed = f"{self.workflow_id}/{self.now().isoformat()}/{self._id_sequence}"
        return str(uuid.uuid5(uuid.NAMESPACE_URL, seed))

    # --- handler registration ---

    def set_signal_handler(self, name: str, handler: Callable) -> None:
        self._signals[name] = handler

    def set_update_handler(
        self, name: str, handler: Callable, validator: Optional[Callable] = None
    ) -> None:
        """
        Register an update. ``validator(*args)`` runs before ``handler`` and
        rejects the update by raising; it must not change workflow state.
        """
        self._updates[name] = _UpdateHandler(handler, validator)

    def set_query_handler(self, name: str, handler: Callable) -> None:
        """
        Register a read-only query. Queries that take no arguments are also
        published with every status update so they can still be read after
        the workflow has closed.
        """
        self._queries[name] = handler

    # --- waiting ---

    def sleep(self, duration: Union[timedelta, datetime]):
        yield self.ctx.create_timer(duration)

    def wait_condition(self, predicate: Callable[[], bool], timeout: Optional[timedelta] = None):
        """
        Process inbox events until ``predicate()`` holds. Returns True, or
        False if ``timeout`` elapsed first.
        """
        self.publish_status()
        timer = None
        if timeout is not None:
            timer = self.ctx.create_timer(self.now() + as_timedelta(timeout))
        while not predicate():
            inbox = self._next_inbox_event()
            if timer is None:
                yield inbox
            else:
                winner = yield task.when_any([inbox, timer])
                if winner is timer:
                    return predicate()
            self._inbox = None
            yield from self._dispatch(InboxMessage.model_validate(inbox.get_result()))
        return True

    def wait_for_reply(self, correlation_id: str, timeout: timedelta) -> Any:
        """Wait for the response pushed back by a workflow we sent an update to."""
        reply = self.ctx.wait_for_external_event(reply_event_name(correlation_id))
        timer = self.ctx.create_timer(self.now() + as_timedelta(timeout))
        winner = yield task.when_any([reply, timer])
        if winner is timer:
            raise RpcTimeoutError(
                f"No reply for request {correlation_id} within {as_timedelta(timeout).total_seconds()}s"
            )
        return RpcResponse.model_validate(reply.get_result())

    def _next_inbox_event(self) -> task.Task:
        # One pending inbox waiter is reused across timeouts so no event is lost.
        if self._inbox is None:
            self._inbox = self.ctx.wait_for_external_event(INBOX_EVENT)
        return self._inbox

    # --- dispatch ---

    def _dispatch(self, message: InboxMessage):
        if message.kind != MessageKind.QUERY:
            self.events_processed += 1
        if message.kind == MessageKind.SIGNAL:
            handler = self._signals.get(message.name)
            if handler is None:
                self.logger.warning("Dropping signal '%s': no handler registered", message.name)
            else:
                yield from drive(handler(*message.args))
        else:
            response = yield from self._answer(message)
            yield from self._respond(message, response)
        self.publish_status()

    def _answer(self, message: InboxMessage):
        correlation_id = message.correlation_id or ""
        try:
            if message.kind == MessageKind.UPDATE:
                entry = self._updates.get(message.name)
                if entry is None:
                    raise HandlerNotFoundError(f"No update handler named '{message.name}'")
                if entry.validator is not None:
                    entry.validator(*message.args)
                result = yield from drive(entry.handler(*message.args))
            else:
                query = self._queries.get(message.name)
                if query is None:
                    raise HandlerNotFoundError(f"No query handler named '{message.name}'")
                result = query(*message.args)
        except Exception as exc:
            self.logger.warning(
                "%s '%s' failed: %s", message.kind.value.capitalize(), message.name, exc
            )
            return RpcResponse.failure(correlation_id, exc)
        return RpcResponse.success(correlation_id, to_jsonable(result))

    def _respond(self, message: InboxMessage, response: RpcResponse):
        if message.correlation_id:
            self._responses[message.correlation_id] = response.model_dump(
                mode="json", exclude={"correlation_id"}
            )
            while len(self._responses) > self._max_tracked_responses:
                del self._responses[next(iter(self._responses))]
        if message.reply_to:
            try:
                yield from self.executor.execute(
                    OP_RAISE_EVENT,
                    {
                        "instance_id": message.reply_to,
                        "event_name": reply_event_name(message.correlation_id or ""),
                        "data": response.model_dump(mode="json"),
                    },
                )
            except WorkflowNotFoundError:
                self.logger.warning(
                    "Caller %s no longer exists; reply to %s dropped",
                    message.reply_to,
                    message.correlation_id,
                )

    # --- status ---

    def query_snapshot(self) -> dict[str, Any]:
        snapshot = {}
        for name, handler in self._queries.items():
            if not _callable_without_args(handler):
                continue
            try:
                snapshot[name] = to_jsonable(handler())
            except Exception as exc:
                self.logger.warning("Query '%s' could not be published: %s", name, exc)
        return snapshot

    def publish_status(self) -> None:
        self.ctx.set_custom_status(
            {"queries": self.query_snapshot(), "responses": dict(self._responses)}
        )

    def continue_as_new(self, *args) -> None:
        """Restart this workflow with fresh history, keeping recent responses."""
        new_start = WorkflowStart(
            tenant_id=self.start.tenant_id,
            args=list(args) if args else self.start.args,
            parent_id=self.start.parent_id,
            carried_responses=self._responses,
        )
        self.logger.info("Continuing as new after %d events", self.events_processed)
        self.ctx.continue_as_new(new_start.model_dump(mode="json"), save_events=True)


def _resolve_tenant(agent: AgentIdentity, workflow_id: str, start: WorkflowStart) -> Optional[str]:
    if agent.scoping == ScopingMode.SYSTEM:
        return start.tenant_id
    if start.tenant_id and start.tenant_id != agent.tenant_id:
        raise TenantIsolationError(
            f"Agent '{agent.name}' belongs to tenant '{agent.tenant_id}', "
            f"not '{start.tenant_id}'"
        )
    if not workflow_id.startswith(f"{agent.tenant_id}{SEPARATOR}"):
        raise TenantIsolationError(
            f"Workflow ID '{workflow_id}' is outside tenant '{agent.tenant_id}'"
        )
    return agent.tenant_id


def host_orchestrator(
    definition,
    body: Callable,
    executor,
    max_tracked_responses: int = 50,
) -> Callable:
    """
    Build the orchestrator function registered with the worker for
    ``definition``. The workflow scope is entered around every step of the
    body so ``context.current()`` is only WORKFLOW while workflow code runs.
    """

    def orchestrator(ctx: task.OrchestrationContext, input: Any):
        start = WorkflowStart.model_validate(input or {})
        agent = definition.agent
        info = WorkflowInfo(
            agent=agent,
            workflow_name=definition.name,
            workflow_type=definition.workflow_type,
            task_queue=definition.task_queue,
            workflow_id=ctx.instance_id,
            tenant_id=_resolve_tenant(agent, ctx.instance_id, start),
            parent_id=start.parent_id,
        )
        wf = WorkflowContext(ctx, info, executor, start, max_tracked_responses)

        with context.workflow_scope(wf):
            steps = body(wf, *start.args)
        if not inspect.isgenerator(steps):
            wf.publish_status()
            return to_jsonable(steps)

        value, error = None, None
        while True:
            try:
                with context.workflow_scope(wf):
                    if error is not None:
                        pending = steps.throw(error)
                    else:
                        pending = steps.send(value)
            except StopIteration as stop:
                wf.publish_status()
                return to_jsonable(stop.value)
            try:
                value, error = (yield pending), None
            except Exception as exc:
                value, error = None, exc

    return named(orchestrator, definition.task_queue)

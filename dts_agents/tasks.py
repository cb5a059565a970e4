"""
Human-in-the-loop tasks.

A task is a long-running workflow holding a draft that people review. It is
``Open`` until an action (by default ``approve`` or ``reject``) completes it;
after that it is read-only::

    task_id = agent.tasks.create("Review post", "Check tone", draft="v0")
    agent.tasks.update_draft(task_id, "v1")
    agent.tasks.perform_action(task_id, "approve", comment="looks good")
    agent.tasks.get_state(task_id).performed_action   # "approve"

From a workflow the same calls are used with ``yield from``.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from . import context
from .engine import Engine
from .errors import TerminalStateViolation, ValidationError, WorkflowFailedError
from .naming import TASK_WORKFLOW_NAME
from .registry import AgentRegistry
from .rpc import WorkflowRpc
from .subworkflows import SubWorkflowLauncher
from .workflow import WorkflowContext, then

logger = logging.getLogger(__name__)

DEFAULT_ACTIONS = ("approve", "reject")

UPDATE_DRAFT = "UpdateDraft"
PERFORM_ACTION = "PerformAction"
GET_STATE_QUERY = "GetState"
GET_TASK_INFO_QUERY = "GetTaskInfo"


class TaskWorkflowRequest(BaseModel):
    task_id: str
    title: str
    description: str = ""
    draft: Optional[str] = None
    participant_id: Optional[str] = None
    actions: list[str] = Field(default_factory=lambda: list(DEFAULT_ACTIONS))
    metadata: dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = None

    @field_validator("actions", mode="before")
    @classmethod
    def _normalize_actions(cls, value):
        actions = [action for action in (value or []) if action]
        if not actions:
            return list(DEFAULT_ACTIONS)
        return list(dict.fromkeys(actions))


class TaskState(BaseModel):
    task_id: str
    title: str
    description: str = ""
    participant_id: Optional[str] = None
    draft: Optional[str] = None
    initial_draft: Optional[str] = None
    available_actions: list[str] = Field(default_factory=list)
    performed_action: Optional[str] = None
    comment: Optional[str] = None
    is_completed: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class TaskResult(BaseModel):
    task_id: str
    initial_draft: Optional[str] = None
    final_draft: Optional[str] = None
    performed_action: Optional[str] = None
    comment: Optional[str] = None
    completed_at: Optional[datetime] = None
    timed_out: bool = False


def check_draft_editable(state: TaskState) -> None:
    if state.is_completed:
        raise TerminalStateViolation(f"Task '{state.task_id}' is completed; its draft is final")


def check_action_allowed(state: TaskState, action: str) -> None:
    if state.is_completed:
        raise TerminalStateViolation(
            f"Task '{state.task_id}' was already completed with '{state.performed_action}'"
        )
    if action not in state.available_actions:
        raise ValidationError(
            f"Action '{action}' is not available; expected one of "
            f"{', '.join(state.available_actions)}"
        )


def task_workflow(wf: WorkflowContext, raw: Any):
    request = TaskWorkflowRequest.model_validate(raw)
    state = TaskState(
        task_id=request.task_id,
        title=request.title,
        description=request.description,
        participant_id=request.participant_id,
        draft=request.draft,
        initial_draft=request.draft,
        available_actions=request.actions,
        metadata=request.metadata,
    )
    wf.logger.info("Task %s started: %s", state.task_id, state.title)

    def update_draft(draft: Optional[str]):
        state.draft = draft

    def perform_action(action: str, comment: Optional[str] = None):
        state.performed_action = action
        state.comment = comment
        state.is_completed = True
        wf.logger.info("Task %s completed with '%s'", state.task_id, action)

    def signaled(check, apply):
        # Raw signals cannot be answered, so rejected ones are only logged.
        def handler(*args):
            try:
                check(*args)
            except (TerminalStateViolation, ValidationError) as exc:
                wf.logger.warning("Ignoring signal to task %s: %s", state.task_id, exc)
                return
            apply(*args)

        return handler

    def check_draft(draft: Optional[str] = None):
        check_draft_editable(state)

    def check_action(action: str, comment: Optional[str] = None):
        check_action_allowed(state, action)

    wf.set_update_handler(UPDATE_DRAFT, update_draft, validator=check_draft)
    wf.set_update_handler(PERFORM_ACTION, perform_action, validator=check_action)
    wf.set_signal_handler(UPDATE_DRAFT, signaled(check_draft, update_draft))
    wf.set_signal_handler(PERFORM_ACTION, signaled(check_action, perform_action))
    wf.set_query_handler(GET_STATE_QUERY, lambda: state)
    wf.set_query_handler(GET_TASK_INFO_QUERY, lambda: state)

    timeout = None
    if request.timeout_seconds:
        timeout = timedelta(seconds=request.timeout_seconds)
    finished = yield from wf.wait_condition(lambda: state.is_completed, timeout=timeout)
    if not finished:
        wf.logger.warning("Task %s timed out", state.task_id)
        state.is_completed = True

    return TaskResult(
        task_id=state.task_id,
        initial_draft=state.initial_draft,
        final_draft=state.draft,
        performed_action=state.performed_action,
        comment=state.comment,
        completed_at=wf.now(),
        timed_out=not finished,
    )


class TaskService:
    """
    Create and drive the tasks of one agent.

    Mutations are updates the task workflow validates itself, so of two
    concurrent actions only the first one applied succeeds. Completed tasks
    raise TerminalStateViolation, actions the task does not offer raise
    ValidationError.
    """

    def __init__(
        self,
        agent,
        registry: AgentRegistry,
        rpc: WorkflowRpc,
        launcher: SubWorkflowLauncher,
        engine: Engine,
    ):
        self._agent = agent
        self._registry = registry
        self._rpc = rpc
        self._launcher = launcher
        self._engine = engine

    @property
    def definition(self):
        return self._registry.workflow(self._agent.name, TASK_WORKFLOW_NAME)

    def create(
        self,
        title: str,
        description: str = "",
        draft: Optional[str] = None,
        *,
        task_id: Optional[str] = None,
        participant_id: Optional[str] = None,
        actions: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
        timeout: Optional[timedelta] = None,
        tenant_id: Optional[str] = None,
    ):
        """Start a task workflow and return its task ID."""
        request = self._request(
            title, description, draft, task_id, participant_id, actions, metadata, timeout
        )
        started = self._launcher.start(
            self.definition,
            request.model_dump(mode="json"),
            id_postfix=request.task_id,
            tenant_id=self._agent.current_tenant(tenant_id),
        )
        return then(started, lambda _: request.task_id)

    def create_and_wait(
        self,
        title: str,
        description: str = "",
        draft: Optional[str] = None,
        *,
        wait_timeout: Optional[float] = None,
        tenant_id: Optional[str] = None,
        **kwargs,
    ):
        """Start a task workflow and wait for its TaskResult."""
        request = self._request(
            title,
            description,
            draft,
            kwargs.pop("task_id", None),
            kwargs.pop("participant_id", None),
            kwargs.pop("actions", None),
            kwargs.pop("metadata", None),
            kwargs.pop("timeout", None),
        )
        if kwargs:
            raise TypeError(f"Unexpected arguments: {', '.join(sorted(kwargs))}")
        result = self._launcher.execute(
            self.definition,
            request.model_dump(mode="json"),
            id_postfix=request.task_id,
            tenant_id=self._agent.current_tenant(tenant_id),
            timeout=wait_timeout,
        )
        return then(result, TaskResult.model_validate)

    def get_state(self, task_id: str, tenant_id: Optional[str] = None):
        self._require_task_id(task_id)
        state = self._rpc.query(
            self.definition,
            GET_STATE_QUERY,
            id_postfix=task_id,
            tenant_id=self._agent.current_tenant(tenant_id),
        )
        return then(state, TaskState.model_validate)

    def get_result(self, task_id: str, timeout: Optional[float] = None, tenant_id: Optional[str] = None) -> TaskResult:
        """Wait for a task to finish. Client code only; workflows use create_and_wait."""
        if context.in_workflow():
            raise RuntimeError("get_result cannot be called from a workflow")
        self._require_task_id(task_id)
        _, identity = self._rpc.resolve(
            self.definition, id_postfix=task_id, tenant_id=self._agent.current_tenant(tenant_id)
        )
        timeout = self._launcher.default_timeout if timeout is None else timeout
        return TaskResult.model_validate(self._engine.wait_for_completion(identity.workflow_id, timeout))

    def update_draft(self, task_id: str, draft: str, tenant_id: Optional[str] = None):
        return self._mutate(task_id, tenant_id, check_draft_editable, UPDATE_DRAFT, draft)

    def perform_action(
        self, task_id: str, action: str, comment: Optional[str] = None, tenant_id: Optional[str] = None
    ):
        if not action or not action.strip():
            raise ValidationError("Action must not be empty")

        def check(state: TaskState):
            check_action_allowed(state, action)

        return self._mutate(task_id, tenant_id, check, PERFORM_ACTION, action, comment)

    def _mutate(self, task_id, tenant_id, check, update_name, *args):
        tenant_id = self._agent.current_tenant(tenant_id)
        state = self.get_state(task_id, tenant_id=tenant_id)
        if context.in_workflow():
            return self._mutate_in_workflow(state, task_id, tenant_id, check, update_name, args)
        check(state)
        try:
            self._rpc.update(
                self.definition, update_name, *args, id_postfix=task_id, tenant_id=tenant_id
            )
        except WorkflowFailedError as exc:
            raise TerminalStateViolation(
                f"Task '{task_id}' was completed before '{update_name}' was applied"
            ) from exc

    def _mutate_in_workflow(self, pending_state, task_id, tenant_id, check, update_name, args):
        state = yield from pending_state
        check(state)
        yield from self._rpc.update(
            self.definition, update_name, *args, id_postfix=task_id, tenant_id=tenant_id
        )

    def _request(
        self, title, description, draft, task_id, participant_id, actions, metadata, timeout
    ) -> TaskWorkflowRequest:
        if not title or not title.strip():
            raise ValidationError("Task title must not be empty")
        if task_id is None:
            wf = context.current_workflow()
            task_id = wf.new_id() if wf is not None else str(uuid.uuid4())
        timeout_seconds = None
        if timeout is not None:
            timeout_seconds = timeout.total_seconds() if isinstance(timeout, timedelta) else float(timeout)
        return TaskWorkflowRequest(
            task_id=task_id,
            title=title,
            description=description,
            draft=draft,
            participant_id=participant_id,
            actions=actions or [],
            metadata=metadata or {},
            timeout_seconds=timeout_seconds,
        )

    @staticmethod
    def _require_task_id(task_id: str) -> None:
        if not task_id or not task_id.strip():
            raise ValidationError("Task ID must not be empty")

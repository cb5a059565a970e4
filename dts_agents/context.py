"""
Execution context resolution.

Code in this package can run inside a replaying orchestration ("workflow
context") or in ordinary code such as a client process or an activity
("client context"). The orchestrator driver enters a workflow scope around
every step of a workflow generator and leaves it before control returns to
the durabletask runtime, so ``current()`` must be asked again on every call.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Iterator, Optional, Union

if TYPE_CHECKING:
    from .workflow import WorkflowContext


class ExecutionContext(str, Enum):
    WORKFLOW = "workflow"
    CLIENT = "client"


@dataclass(frozen=True)
class ActivityInfo:
    """Identifies the activity invocation the current code runs in."""

    name: str
    orchestration_id: str
    task_id: int


_scope: ContextVar[Union["WorkflowContext", ActivityInfo, None]] = ContextVar(
    "dts_agents_scope", default=None
)


def current() -> ExecutionContext:
    """Resolve the execution context of the caller. Never cache the result."""
    if _is_workflow(_scope.get()):
        return ExecutionContext.WORKFLOW
    return ExecutionContext.CLIENT


def in_workflow() -> bool:
    return current() == ExecutionContext.WORKFLOW


def current_workflow() -> Optional["WorkflowContext"]:
    """The WorkflowContext of the running orchestration step, or None."""
    scope = _scope.get()
    return scope if _is_workflow(scope) else None


def current_activity() -> Optional[ActivityInfo]:
    scope = _scope.get()
    return scope if isinstance(scope, ActivityInfo) else None


def require_workflow() -> "WorkflowContext":
    wf = current_workflow()
    if wf is None:
        raise RuntimeError("This operation is only available inside a workflow")
    return wf


@contextmanager
def workflow_scope(wf: "WorkflowContext") -> Iterator["WorkflowContext"]:
    token = _scope.set(wf)
    try:
        yield wf
    finally:
        _scope.reset(token)


@contextmanager
def activity_scope(info: ActivityInfo) -> Iterator[ActivityInfo]:
    token = _scope.set(info)
    try:
        yield info
    finally:
        _scope.reset(token)


def _is_workflow(scope) -> bool:
    return scope is not None and not isinstance(scope, ActivityInfo)

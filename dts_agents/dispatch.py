"""
Context-aware dispatch of stateful operations.

An operation is registered once, by name, with the function that performs
it. Calling it through ``ContextAwareExecutor.execute`` either runs that
function directly (client context) or schedules it as a durabletask activity
(workflow context). Inside a workflow the call returns a generator, so
workflow code always writes::

    doc = yield from executor.execute("documents.get", payload)
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Iterator, Optional

from durabletask import task

from . import context
from .errors import NotFoundError, OperationFailedError, ValidationError, from_failure, to_failure

logger = logging.getLogger(__name__)

FAILURE_KEY = "dts_agents.failure"


@dataclass(frozen=True)
class ActivityOptions:
    """Retry behaviour of an operation scheduled as an activity."""

    max_attempts: int = 3
    first_retry_interval: timedelta = timedelta(seconds=1)
    max_retry_interval: timedelta = timedelta(seconds=10)
    backoff_coefficient: float = 2.0

    @classmethod
    def from_settings(cls, settings) -> "ActivityOptions":
        return cls(
            max_attempts=settings.activity_max_attempts,
            first_retry_interval=timedelta(seconds=settings.activity_first_retry_seconds),
            max_retry_interval=timedelta(seconds=settings.activity_max_retry_seconds),
            backoff_coefficient=settings.activity_backoff_coefficient,
        )

    def retry_policy(self) -> Optional[task.RetryPolicy]:
        if self.max_attempts <= 1:
            return None
        return task.RetryPolicy(
            first_retry_interval=self.first_retry_interval,
            max_number_of_attempts=self.max_attempts,
            backoff_coefficient=self.backoff_coefficient,
            max_retry_interval=self.max_retry_interval,
        )


@dataclass(frozen=True)
class Operation:
    name: str
    impl: Callable[[Any], Any]
    options: Optional[ActivityOptions] = None
    description: str = ""


def named(fn: Callable, name: str) -> Callable:
    """Give a freshly created function the name durabletask registers it under."""
    fn.__name__ = name
    fn.__qualname__ = name
    return fn


@dataclass
class OperationRegistry:
    """Explicit registry of dispatcher operations, filled at composition time."""

    _operations: dict[str, Operation] = field(default_factory=dict)

    def register(
        self,
        name: str,
        impl: Callable[[Any], Any],
        options: Optional[ActivityOptions] = None,
        description: str = "",
    ) -> Operation:
        if not name or not name.strip():
            raise ValidationError("Operation name must not be empty")
        if name in self._operations:
            raise ValidationError(f"Operation '{name}' is already registered")
        operation = Operation(name=name, impl=impl, options=options, description=description)
        self._operations[name] = operation
        return operation

    def get(self, name: str) -> Operation:
        try:
            return self._operations[name]
        except KeyError:
            raise NotFoundError(f"Operation '{name}' is not registered") from None

    def __contains__(self, name: str) -> bool:
        return name in self._operations

    def __iter__(self) -> Iterator[Operation]:
        return iter(self._operations.values())

    def as_activities(self) -> dict[str, Callable]:
        """Activity functions for the worker, keyed by operation name."""
        return {op.name: _activity_for(op) for op in self}


def _activity_for(operation: Operation) -> Callable:
    def run_activity(ctx, payload):
        info = context.ActivityInfo(
            name=operation.name,
            orchestration_id=ctx.orchestration_id,
            task_id=ctx.task_id,
        )
        with context.activity_scope(info):
            try:
                return operation.impl(payload)
            except (ValidationError, NotFoundError) as exc:
                # Returned rather than raised so the activity is not retried.
                logger.warning("Operation %s rejected its input: %s", operation.name, exc)
                return {FAILURE_KEY: to_failure(exc)}

    return named(run_activity, operation.name)


class ContextAwareExecutor:
    """
    Runs registered operations on the path the current context allows.

    Client context: ``impl(payload)`` runs immediately and transport errors
    propagate unmodified. Workflow context: the operation is scheduled as an
    activity with the operation's retry policy; a failure after the last
    attempt raises OperationFailedError. Validation and not-found errors are
    raised as themselves after a single attempt.
    """

    def __init__(self, operations: OperationRegistry, default_options: Optional[ActivityOptions] = None):
        self._operations = operations
        self._default_options = default_options or ActivityOptions()

    @property
    def operations(self) -> OperationRegistry:
        return self._operations

    def execute(
        self,
        name: str,
        payload: Any = None,
        *,
        convert: Optional[Callable[[Any], Any]] = None,
        options: Optional[ActivityOptions] = None,
    ):
        operation = self._operations.get(name)
        wf = context.current_workflow()
        if wf is None:
            logger.debug("Running operation %s directly", name)
            result = operation.impl(payload)
            return convert(result) if convert else result
        options = options or operation.options or self._default_options
        return self._run_as_activity(wf, operation, payload, convert, options)

    def _run_as_activity(self, wf, operation: Operation, payload, convert, options: ActivityOptions):
        wf.logger.debug("Scheduling operation %s as activity", operation.name)
        try:
            result = yield wf.ctx.call_activity(
                operation.name, input=payload, retry_policy=options.retry_policy()
            )
        except task.TaskFailedError as exc:
            details = exc.details
            raise OperationFailedError(operation.name, details.message, details.error_type) from exc
        if isinstance(result, dict) and FAILURE_KEY in result:
            raise from_failure(result[FAILURE_KEY])
        return convert(result) if convert else result

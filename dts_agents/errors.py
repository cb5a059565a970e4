"""
Error taxonomy shared by every layer of dts_agents.

Validation and not-found errors are deterministic for a given input and are
never retried. Errors raised inside a target workflow travel back to the caller
as a ``{"type", "message", ...}`` failure and are rebuilt with ``from_failure``.
"""

from typing import Any, Optional


class DtsAgentsError(Exception):
    """Base class for all dts_agents errors."""


class ValidationError(DtsAgentsError, ValueError):
    """Empty or malformed names, arguments or payloads."""


class FormatError(ValidationError):
    """A workflow type or identifier string does not follow the expected layout."""


class TenantIsolationError(ValidationError):
    """A call would cross a tenant boundary, or lacks a required tenant."""


class NotFoundError(DtsAgentsError, LookupError):
    """A named agent, workflow, handler or resource does not exist."""


class AgentNotFoundError(NotFoundError):
    def __init__(self, agent_name: str):
        super().__init__(f"Agent '{agent_name}' is not registered")
        self.agent_name = agent_name


class WorkflowNotFoundError(NotFoundError):
    """No workflow instance (or workflow definition) exists for the given name."""


class HandlerNotFoundError(NotFoundError):
    """The target workflow has no handler registered under the requested name."""


class RpcTimeoutError(DtsAgentsError, TimeoutError):
    """
    The caller stopped waiting for a reply.

    This does not mean the remote operation failed: the target may still
    apply it later.
    """


class OperationFailedError(DtsAgentsError):
    """A dispatcher-routed operation exhausted its activity retries."""

    kind = "OperationFailed"

    def __init__(self, operation: str, cause: str, error_type: Optional[str] = None):
        super().__init__(f"Operation '{operation}' failed: {cause}")
        self.operation = operation
        self.cause = cause
        self.error_type = error_type


class TerminalStateViolation(DtsAgentsError):
    """A mutation targeted a task resource that has already completed."""


class RemoteHandlerError(DtsAgentsError):
    """A handler inside the target workflow raised an error we cannot map back."""

    def __init__(self, message: str, error_type: Optional[str] = None):
        super().__init__(message)
        self.error_type = error_type


class WorkflowFailedError(DtsAgentsError):
    """A workflow (or child workflow) finished in a failed or terminated state."""


class BackendError(DtsAgentsError):
    """The backend HTTP API answered with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


_WIRE_TYPES = {
    cls.__name__: cls
    for cls in (
        ValidationError,
        FormatError,
        TenantIsolationError,
        NotFoundError,
        WorkflowNotFoundError,
        HandlerNotFoundError,
        RpcTimeoutError,
        TerminalStateViolation,
        WorkflowFailedError,
    )
}


def to_failure(exc: BaseException) -> dict[str, Any]:
    """Serialize an exception into the failure shape used on the wire."""
    failure = {"type": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, AgentNotFoundError):
        failure["agent_name"] = exc.agent_name
    elif isinstance(exc, OperationFailedError):
        failure.update(operation=exc.operation, cause=exc.cause, error_type=exc.error_type)
    elif isinstance(exc, BackendError):
        failure["status_code"] = exc.status_code
    return failure


def from_failure(failure: dict[str, Any]) -> DtsAgentsError:
    """Rebuild an exception from a wire failure, falling back to RemoteHandlerError."""
    error_type = failure.get("type")
    message = failure.get("message") or "Remote handler failed"
    if error_type == "AgentNotFoundError":
        if failure.get("agent_name"):
            return AgentNotFoundError(failure["agent_name"])
        return NotFoundError(message)
    if error_type == "OperationFailedError" and failure.get("operation"):
        return OperationFailedError(
            failure["operation"], failure.get("cause") or message, failure.get("error_type")
        )
    if error_type == "BackendError":
        return BackendError(message, status_code=failure.get("status_code"))
    if error_type in _WIRE_TYPES:
        return _WIRE_TYPES[error_type](message)
    return RemoteHandlerError(message, error_type)

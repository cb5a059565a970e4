"""
Wire models exchanged between callers and hosted workflows.

Every signal, update and query travels as one ``InboxMessage`` raised as the
workflow's inbox external event. The workflow publishes the results of
updates and queries (and the snapshots of its zero-argument queries) as its
custom status, shaped like ``WorkflowStatus``. Callers inside another workflow
additionally get the response pushed to them as the ``reply:{id}`` event.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .errors import DtsAgentsError, from_failure, to_failure

INBOX_EVENT = "dts_agents.inbox"
REPLY_EVENT_PREFIX = "dts_agents.reply:"


def reply_event_name(correlation_id: str) -> str:
    return REPLY_EVENT_PREFIX + correlation_id


class MessageKind(str, Enum):
    SIGNAL = "signal"
    UPDATE = "update"
    QUERY = "query"


class InboxMessage(BaseModel):
    kind: MessageKind
    name: str
    args: list[Any] = Field(default_factory=list)
    correlation_id: Optional[str] = None
    reply_to: Optional[str] = None


class RpcResponse(BaseModel):
    correlation_id: str
    result: Any = None
    error: Optional[dict[str, Any]] = None

    @classmethod
    def success(cls, correlation_id: str, result: Any) -> "RpcResponse":
        return cls(correlation_id=correlation_id, result=result)

    @classmethod
    def failure(cls, correlation_id: str, exc: BaseException) -> "RpcResponse":
        return cls(correlation_id=correlation_id, error=to_failure(exc))

    @property
    def ok(self) -> bool:
        return self.error is None

    def exception(self) -> Optional[DtsAgentsError]:
        if self.error is None:
            return None
        return from_failure(self.error)

    def unwrap(self) -> Any:
        """Return the result or raise the remote error."""
        if self.error is not None:
            raise from_failure(self.error)
        return self.result


class WorkflowStatus(BaseModel):
    queries: dict[str, Any] = Field(default_factory=dict)
    responses: dict[str, dict[str, Any]] = Field(default_factory=dict)

    def response(self, correlation_id: str) -> Optional[RpcResponse]:
        raw = self.responses.get(correlation_id)
        if raw is None:
            return None
        return RpcResponse(correlation_id=correlation_id, **raw)


class WorkflowStart(BaseModel):
    """Input every hosted workflow is started with."""

    tenant_id: Optional[str] = None
    args: list[Any] = Field(default_factory=list)
    parent_id: Optional[str] = None
    carried_responses: dict[str, dict[str, Any]] = Field(default_factory=dict)


def to_jsonable(value: Any) -> Any:
    """Convert pydantic models (possibly nested in lists/dicts) into plain JSON values."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    return value

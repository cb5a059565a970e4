"""
Message envelope, A2A response and the context handed to message handlers.

A handler registered on a built-in workflow receives a ``MessageContext``::

    def on_chat(ctx: MessageContext):
        ctx.reply(ctx.text + " world")

For agent-to-agent requests the reply is returned to the sender. For
messages that came from a user, replies are sent to the participant through
the backend once the handler returns.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .errors import ValidationError


class MessageType(str, Enum):
    CHAT = "chat"
    DATA = "data"


class MessageEnvelope(BaseModel):
    participant_id: str = ""
    thread_id: Optional[str] = None
    scope: Optional[str] = None
    hint: Optional[str] = None
    authorization: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    request_id: str = ""
    tenant_id: str = ""
    type: MessageType = MessageType.CHAT
    text: Optional[str] = None
    data: Any = None
    source_agent: Optional[str] = None
    source_workflow_id: Optional[str] = None


class A2AResponse(BaseModel):
    text: Optional[str] = None
    data: Any = None


class OutboundMessage(BaseModel):
    """A reply addressed to a participant, delivered through the backend."""

    participant_id: str
    workflow_id: str
    workflow_type: str
    type: MessageType = MessageType.CHAT
    text: Optional[str] = None
    data: Any = None
    thread_id: Optional[str] = None
    scope: Optional[str] = None
    hint: Optional[str] = None
    request_id: Optional[str] = None
    authorization: Optional[str] = None
    tenant_id: str = ""


class MessageContext:
    """What a chat/data handler sees of the inbound message and its workflow."""

    def __init__(self, envelope: MessageEnvelope, wf, is_a2a: bool = False):
        self.envelope = envelope
        self.workflow = wf
        self.is_a2a = is_a2a
        self.response: Optional[A2AResponse] = None
        self.outbound: list[OutboundMessage] = []

    @property
    def text(self) -> Optional[str]:
        return self.envelope.text

    @property
    def data(self) -> Any:
        return self.envelope.data

    @property
    def message_type(self) -> MessageType:
        return self.envelope.type

    @property
    def participant_id(self) -> str:
        return self.envelope.participant_id

    @property
    def request_id(self) -> str:
        return self.envelope.request_id

    @property
    def thread_id(self) -> Optional[str]:
        return self.envelope.thread_id

    @property
    def scope(self) -> Optional[str]:
        return self.envelope.scope

    @property
    def hint(self) -> Optional[str]:
        return self.envelope.hint

    @property
    def authorization(self) -> Optional[str]:
        return self.envelope.authorization

    @property
    def metadata(self) -> dict[str, str]:
        return self.envelope.metadata

    @property
    def tenant_id(self) -> str:
        return self.envelope.tenant_id

    @property
    def logger(self):
        return self.workflow.logger

    def reply(self, text: str, data: Any = None) -> None:
        if text is None:
            raise ValidationError("Reply text must not be None")
        self._respond(MessageType.CHAT, text, data)

    def send_data(self, data: Any, text: Optional[str] = None) -> None:
        self._respond(MessageType.DATA, text, data)

    def _respond(self, message_type: MessageType, text: Optional[str], data: Any) -> None:
        if self.is_a2a:
            # The last reply wins; the sender receives exactly one response.
            self.response = A2AResponse(text=text, data=data)
            return
        info = self.workflow.info
        self.outbound.append(
            OutboundMessage(
                participant_id=self.participant_id,
                workflow_id=info.workflow_id,
                workflow_type=info.workflow_type,
                type=message_type,
                text=text,
                data=data,
                thread_id=self.thread_id,
                scope=self.scope,
                hint=self.hint,
                request_id=self.request_id,
                authorization=self.authorization,
                tenant_id=self.tenant_id,
            )
        )

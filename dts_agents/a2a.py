"""
Agent-to-agent messaging.

``A2AClient`` sends a chat or data envelope to another agent's built-in
workflow and returns the reply its handler produced::

    response = agent.a2a.send_chat_to_builtin("Target", MessageEnvelope(text="hello"))
    response = yield from agent.a2a.send_chat_to_builtin("Target", ...)   # in a workflow

The target is resolved with the sender's tenant, started if it is not
running, and sent a ``HandleA2AMessage`` update keyed by the envelope's
request ID. Every context field of the envelope (thread, scope, hint,
authorization, metadata, participant) reaches the handler unchanged.
"""

import logging
import uuid
from typing import Any, Callable, Optional

from . import context
from .builtin import A2A_UPDATE
from .errors import DtsAgentsError, ValidationError
from .messaging import A2AResponse, MessageEnvelope, MessageType
from .workflow import then

logger = logging.getLogger(__name__)


def _response(result: Any) -> A2AResponse:
    return A2AResponse.model_validate(result or {})


class A2AClient:
    """
    Sends A2A messages on behalf of one agent.

    Args:
        agent: The sending Agent
        rpc: WorkflowRpc used to deliver the update
        registry: Agent registry used to resolve targets
    """

    def __init__(self, agent, rpc, registry):
        self._agent = agent
        self._rpc = rpc
        self._registry = registry

    def send_chat_to_builtin(
        self,
        target: str,
        envelope: Optional[MessageEnvelope] = None,
        *,
        timeout: Optional[float] = None,
        tenant_id: Optional[str] = None,
    ):
        return self._send(target, envelope, MessageType.CHAT, timeout, tenant_id)

    def send_data_to_builtin(
        self,
        target: str,
        envelope: Optional[MessageEnvelope] = None,
        *,
        timeout: Optional[float] = None,
        tenant_id: Optional[str] = None,
    ):
        return self._send(target, envelope, MessageType.DATA, timeout, tenant_id)

    def send_text(self, target: str, text: str, **kwargs):
        """Send a plain chat message and return the reply."""
        if text is None:
            raise ValidationError("Text must not be None")
        return self.send_chat_to_builtin(target, MessageEnvelope(text=text), **kwargs)

    def try_send_chat_to_builtin(self, target: str, envelope: Optional[MessageEnvelope] = None, **kwargs):
        """Like send_chat_to_builtin, returning ``(ok, response, error_message)`` instead of raising."""
        return self._try(lambda: self.send_chat_to_builtin(target, envelope, **kwargs))

    def try_send_data_to_builtin(self, target: str, envelope: Optional[MessageEnvelope] = None, **kwargs):
        return self._try(lambda: self.send_data_to_builtin(target, envelope, **kwargs))

    def _send(self, target, envelope, message_type, timeout, tenant_id):
        definition = self._registry.resolve_builtin_target(target, sender=self._agent.identity)
        if not definition.is_builtin:
            raise ValidationError(f"'{definition.workflow_type}' is not a built-in workflow")
        tenant_id = self._agent.current_tenant(tenant_id)
        envelope = self._prepare(envelope, message_type, tenant_id)
        logger.debug(
            "Sending A2A %s %s from %s to %s",
            message_type.value, envelope.request_id, self._agent.name, definition.workflow_type,
        )
        pending = self._rpc.update(
            definition,
            A2A_UPDATE,
            envelope.model_dump(mode="json"),
            tenant_id=tenant_id,
            timeout=timeout,
            start=True,
            correlation_id=envelope.request_id,
        )
        return then(pending, _response)

    def _prepare(
        self, envelope: Optional[MessageEnvelope], message_type: MessageType, tenant_id: Optional[str]
    ) -> MessageEnvelope:
        envelope = envelope.model_copy(deep=True) if envelope is not None else MessageEnvelope()
        envelope.type = message_type
        wf = context.current_workflow()
        source_id = wf.workflow_id if wf is not None else None
        if not envelope.request_id:
            envelope.request_id = wf.new_id() if wf is not None else str(uuid.uuid4())
        if not envelope.participant_id:
            envelope.participant_id = source_id or self._agent.name
        if not envelope.thread_id:
            envelope.thread_id = source_id
        if not envelope.tenant_id and tenant_id:
            envelope.tenant_id = tenant_id
        envelope.source_agent = self._agent.name
        envelope.source_workflow_id = source_id
        return envelope

    def _try(self, send: Callable):
        if context.current_workflow() is not None:
            return self._try_in_workflow(send)
        try:
            return True, send(), None
        except DtsAgentsError as exc:
            logger.warning("A2A request failed: %s", exc)
            return False, None, f"A2A request failed: {exc}"

    def _try_in_workflow(self, send: Callable):
        try:
            response = yield from send()
        except DtsAgentsError as exc:
            return False, None, f"A2A request failed: {exc}"
        return True, response, None

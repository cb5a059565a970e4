"""
Built-in workflow: the long-running message loop of an agent.

It hosts the handlers from a ``HandlerTable`` and reacts to:

- ``HandleInboundChatOrData`` (signal): a message from a user; replies are
  sent to the participant through the backend, errors become an error reply
- ``HandleA2AMessage`` (update): a message from another agent; the reply is
  returned to the sender, keyed by the envelope's request ID
- ``HandleWebhook`` (update): a webhook call, answered with a WebhookResponse
- ``Complete`` (signal): ends the loop

After ``max_events_per_run`` events the workflow continues as new so its
history stays bounded.
"""

from typing import Any

import pydantic

from .backend import OP_MESSAGE_SEND
from .errors import (
    HandlerNotFoundError,
    OperationFailedError,
    RemoteHandlerError,
    TenantIsolationError,
)
from .messaging import MessageContext, MessageEnvelope, MessageType
from .naming import ScopingMode
from .registry import HandlerTable
from .webhooks import WEBHOOK_UPDATE, WebhookRequest, WebhookResponse
from .workflow import WorkflowContext, drive

INBOUND_SIGNAL = "HandleInboundChatOrData"
A2A_UPDATE = "HandleA2AMessage"
COMPLETE_SIGNAL = "Complete"


class BuiltinWorkflow:
    def __init__(self, handlers: HandlerTable, max_events_per_run: int = 1000):
        self.handlers = handlers
        self.max_events_per_run = max_events_per_run

    def __call__(self, wf: WorkflowContext, *args):
        return self._run(wf)

    def _run(self, wf: WorkflowContext):
        state = {"completed": False}

        def complete():
            wf.logger.info("Completion requested")
            state["completed"] = True

        wf.set_signal_handler(COMPLETE_SIGNAL, complete)
        wf.set_signal_handler(INBOUND_SIGNAL, lambda raw: self._on_inbound(wf, raw))
        wf.set_update_handler(
            A2A_UPDATE,
            lambda raw: self._on_a2a(wf, raw),
            validator=lambda raw: self._handler_for(self._envelope(wf, raw)),
        )
        wf.set_update_handler(
            WEBHOOK_UPDATE,
            lambda raw: self._on_webhook(wf, raw),
            validator=lambda raw: self._webhook_handler(WebhookRequest.model_validate(raw)),
        )
        wf.set_query_handler("GetEventsProcessed", lambda: wf.events_processed)

        yield from wf.wait_condition(
            lambda: state["completed"] or wf.events_processed >= self.max_events_per_run
        )
        if not state["completed"]:
            wf.continue_as_new()
            return None
        return {"events_processed": wf.events_processed}

    # --- messages ---

    def _envelope(self, wf: WorkflowContext, raw: Any) -> MessageEnvelope:
        envelope = MessageEnvelope.model_validate(raw)
        if not envelope.tenant_id:
            envelope.tenant_id = wf.tenant_id or ""
        agent = wf.info.agent
        if agent.scoping == ScopingMode.TENANT and envelope.tenant_id != agent.tenant_id:
            raise TenantIsolationError(
                f"Message for tenant '{envelope.tenant_id}' reached agent '{agent.name}' "
                f"of tenant '{agent.tenant_id}'"
            )
        return envelope

    def _handler_for(self, envelope: MessageEnvelope):
        if envelope.type == MessageType.DATA:
            handler = self.handlers.data
        else:
            handler = self.handlers.chat
        if handler is None:
            raise HandlerNotFoundError(f"No {envelope.type.value} handler is registered")
        return handler

    def _on_a2a(self, wf: WorkflowContext, raw: Any):
        envelope = self._envelope(wf, raw)
        handler = self._handler_for(envelope)
        wf.logger.info(
            "A2A %s message %s from %s",
            envelope.type.value,
            envelope.request_id,
            envelope.source_agent or envelope.participant_id,
        )
        ctx = MessageContext(envelope, wf, is_a2a=True)
        with wf.acting_for(envelope.tenant_id):
            yield from drive(handler(ctx))
        if ctx.response is None:
            raise RemoteHandlerError(
                f"Handler for A2A request {envelope.request_id} did not send a response"
            )
        return ctx.response

    def _on_inbound(self, wf: WorkflowContext, raw: Any):
        try:
            envelope = MessageEnvelope.model_validate(raw)
        except pydantic.ValidationError as exc:
            wf.logger.error("Dropping malformed inbound message: %s", exc)
            return
        if not envelope.tenant_id:
            envelope.tenant_id = wf.tenant_id or ""
        ctx = MessageContext(envelope, wf)
        with wf.acting_for(envelope.tenant_id):
            try:
                self._envelope(wf, raw)
                handler = self._handler_for(envelope)
                yield from drive(handler(ctx))
            except Exception as exc:
                wf.logger.error("Handling message %s failed: %s", envelope.request_id, exc)
                ctx.reply(f"Error: {exc}")
            yield from self._flush(wf, ctx)

    def _flush(self, wf: WorkflowContext, ctx: MessageContext):
        for message in ctx.outbound:
            try:
                yield from wf.executor.execute(OP_MESSAGE_SEND, message.model_dump(mode="json"))
            except OperationFailedError as exc:
                wf.logger.error(
                    "Reply to %s could not be delivered: %s", message.participant_id, exc
                )
        ctx.outbound.clear()

    # --- webhooks ---

    def _webhook_handler(self, request: WebhookRequest):
        handler = self.handlers.webhooks.get(request.name)
        if handler is None:
            raise HandlerNotFoundError(f"No webhook named '{request.name}'")
        return handler

    def _on_webhook(self, wf: WorkflowContext, raw: Any):
        request = WebhookRequest.model_validate(raw)
        handler = self._webhook_handler(request)
        try:
            with wf.acting_for(request.tenant_id):
                result = yield from drive(handler(request))
        except Exception as exc:
            wf.logger.error("Webhook '%s' failed: %s", request.name, exc)
            return WebhookResponse.internal_server_error(str(exc))
        if isinstance(result, WebhookResponse):
            return result
        return WebhookResponse.ok(result)

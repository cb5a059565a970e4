"""
dts_agents - Multi-tenant durable agents on the Durable Task Scheduler

This library hosts named agents as long-running durable workflows. Each
agent reacts to chat/data messages, webhooks and messages from other agents,
and is isolated per tenant by its workflow IDs and task queues.

1. REGISTER AGENTS - declare handlers and workflows explicitly:

    from dts_agents import AgentPlatform

    platform = AgentPlatform(dts_host="localhost:8080", taskhub="default")
    support = platform.register_agent("Support", tenant_id="contoso")
    billing = platform.register_agent("Billing", tenant_id="contoso")

    @billing.on_chat
    def answer(ctx):
        ctx.reply(f"Invoice status for {ctx.participant_id}: paid")

    @support.on_chat
    def triage(ctx):
        # In a workflow every engine-backed call is used with ``yield from``
        reply = yield from support.a2a.send_text("Billing", ctx.text)
        ctx.reply(reply.text)

    platform.run()  # Starts the webhook server + DTS worker


2. CALL THEM FROM CLIENT CODE - the same APIs block and return values:

    reply = support.a2a.send_text("Billing", "is invoice 42 paid?")
    task_id = support.tasks.create("Refund", "Approve refund", draft="$10")
    support.tasks.perform_action(task_id, "approve")


Components:
- Naming: canonical workflow types, IDs and task queues per tenant
- Dispatcher: runs stateful operations directly, or as activities in workflows
- RPC: signals, updates and queries between any hosted workflows
- A2A: chat/data envelopes between agents with correlated replies
- Tasks: human-in-the-loop tasks, also exposed as MCP tools

Architecture:
    Client / AI Agent <--HTTP/MCP--> AgentPlatform <--gRPC--> DTS Backend
                                     (Webhooks)     (Worker + Client)
"""

from .a2a import A2AClient
from .agent import Agent
from .config import AgentSettings
from .context import ExecutionContext, current
from .errors import (
    AgentNotFoundError,
    BackendError,
    DtsAgentsError,
    FormatError,
    HandlerNotFoundError,
    NotFoundError,
    OperationFailedError,
    RemoteHandlerError,
    RpcTimeoutError,
    TenantIsolationError,
    TerminalStateViolation,
    ValidationError,
    WorkflowFailedError,
    WorkflowNotFoundError,
)
from .messaging import A2AResponse, MessageContext, MessageEnvelope, MessageType
from .naming import (
    AgentIdentity,
    ScopingMode,
    WorkflowIdentity,
    build_task_queue_name,
    build_workflow_id,
    build_workflow_type,
)
from .platform import AgentPlatform
from .tasks import TaskResult, TaskState
from .tools import TaskTools
from .webhooks import WebhookRequest, WebhookResponse
from .workflow import WorkflowContext

__all__ = [
    "A2AClient",
    "A2AResponse",
    "Agent",
    "AgentIdentity",
    "AgentNotFoundError",
    "AgentPlatform",
    "AgentSettings",
    "BackendError",
    "DtsAgentsError",
    "ExecutionContext",
    "FormatError",
    "HandlerNotFoundError",
    "MessageContext",
    "MessageEnvelope",
    "MessageType",
    "NotFoundError",
    "OperationFailedError",
    "RemoteHandlerError",
    "RpcTimeoutError",
    "ScopingMode",
    "TaskResult",
    "TaskState",
    "TaskTools",
    "TenantIsolationError",
    "TerminalStateViolation",
    "ValidationError",
    "WebhookRequest",
    "WebhookResponse",
    "WorkflowContext",
    "WorkflowFailedError",
    "WorkflowIdentity",
    "WorkflowNotFoundError",
    "build_task_queue_name",
    "build_workflow_id",
    "build_workflow_type",
    "current",
]

"""Tests for agent-to-agent messaging and the built-in message loop."""

from types import SimpleNamespace

import pytest

from dts_agents import AgentPlatform, MessageEnvelope
from dts_agents.errors import (
    AgentNotFoundError,
    HandlerNotFoundError,
    TenantIsolationError,
    ValidationError,
)

TARGET_ID = "T1:Target:BuiltIn Workflow"
SENDER_ID = "T1:Sender:BuiltIn Workflow"


@pytest.fixture
def agents(platform: AgentPlatform, runtime) -> SimpleNamespace:
    """Provide Sender and Target agents on tenant T1, plus a failing agent."""
    sender = platform.register_agent("Sender", tenant_id="T1")
    target = platform.register_agent("Target", tenant_id="T1")
    broken = platform.register_agent("Broken", tenant_id="T1")
    seen = []

    @target.on_chat
    def append_world(ctx):
        seen.append(ctx.envelope.model_dump())
        ctx.reply(ctx.text + " world")

    @target.on_data
    def total(ctx):
        ctx.send_data({"sum": sum(ctx.data["values"])})

    @sender.on_chat
    def relay(ctx):
        response = yield from sender.a2a.send_text("Target", ctx.text)
        ctx.reply(f"Target said: {response.text}")

    @broken.on_chat
    def explode(ctx):
        raise ValueError("nope")

    runtime.register(platform)
    return SimpleNamespace(sender=sender, target=target, seen=seen)


def test_chat_reply_comes_back_to_the_sender(agents: SimpleNamespace, runtime) -> None:
    response = agents.sender.a2a.send_chat_to_builtin(
        "Target", MessageEnvelope(text="hello", request_id="req-1")
    )

    assert response.text == "hello world"
    assert agents.seen[0]["request_id"] == "req-1"
    assert "req-1" in runtime.instances[TARGET_ID].custom_status["responses"]


def test_envelope_context_reaches_the_handler_unchanged(agents: SimpleNamespace) -> None:
    envelope = MessageEnvelope(
        text="hello",
        participant_id="user-7",
        thread_id="thread-1",
        scope="billing",
        hint="be brief",
        authorization="Bearer abc",
        metadata={"channel": "web", "locale": "en"},
    )

    agents.sender.a2a.send_chat_to_builtin("Target", envelope)

    seen = agents.seen[0]
    assert seen["participant_id"] == "user-7"
    assert seen["thread_id"] == "thread-1"
    assert seen["scope"] == "billing"
    assert seen["hint"] == "be brief"
    assert seen["authorization"] == "Bearer abc"
    assert seen["metadata"] == {"channel": "web", "locale": "en"}
    assert seen["tenant_id"] == "T1"
    assert seen["source_agent"] == "Sender"


def test_client_sends_get_default_identity_fields(agents: SimpleNamespace) -> None:
    envelope = MessageEnvelope(text="hi")

    agents.sender.a2a.send_chat_to_builtin("Target", envelope)

    seen = agents.seen[0]
    assert seen["participant_id"] == "Sender"
    assert seen["request_id"]
    assert seen["thread_id"] is None
    assert seen["source_workflow_id"] is None
    assert envelope.request_id == ""


def test_data_messages_use_the_data_handler(agents: SimpleNamespace) -> None:
    response = agents.sender.a2a.send_data_to_builtin(
        "Target", MessageEnvelope(data={"values": [1, 2, 3]})
    )

    assert response.data == {"sum": 6}
    assert response.text is None
    assert agents.seen == []


def test_missing_handler_is_reported_to_the_sender(agents: SimpleNamespace) -> None:
    with pytest.raises(HandlerNotFoundError):
        agents.target.a2a.send_data_to_builtin("Sender", MessageEnvelope(data={"x": 1}))


@pytest.mark.parametrize(("target", "error"), [("Ghost", AgentNotFoundError), ("", ValidationError)])
def test_unknown_targets_fail_before_any_workflow_starts(
    agents: SimpleNamespace, runtime, target: str, error: type
) -> None:
    with pytest.raises(error):
        agents.sender.a2a.send_text(target, "hello")

    assert runtime.instances == {}


def test_custom_workflows_are_not_a2a_targets(agents: SimpleNamespace) -> None:
    with pytest.raises(ValidationError):
        agents.sender.a2a.send_text("Target:Task Workflow", "hello")


def test_cross_tenant_send_is_refused(agents: SimpleNamespace) -> None:
    with pytest.raises(TenantIsolationError):
        agents.sender.a2a.send_text("Target", "hello", tenant_id="T2")


def test_try_send_reports_instead_of_raising(agents: SimpleNamespace) -> None:
    ok, response, error = agents.sender.a2a.try_send_chat_to_builtin("Target", MessageEnvelope(text="a"))
    assert (ok, response.text, error) == (True, "a world", None)

    ok, response, error = agents.sender.a2a.try_send_data_to_builtin("Ghost", MessageEnvelope(data={}))
    assert ok is False
    assert response is None
    assert error.startswith("A2A request failed:")


def test_handler_can_message_another_agent(
    platform: AgentPlatform, agents: SimpleNamespace, backend, runtime
) -> None:
    platform.send_message("Sender", MessageEnvelope(participant_id="user-1", text="hi"))

    assert [message["text"] for message in backend.outbound] == ["Target said: hi world"]
    outbound = backend.outbound[0]
    assert outbound["participantId"] == "user-1"
    assert outbound["tenant"] == "T1"
    assert outbound["workflowId"] == SENDER_ID

    seen = agents.seen[0]
    assert seen["participant_id"] == SENDER_ID
    assert seen["thread_id"] == SENDER_ID
    assert seen["source_workflow_id"] == SENDER_ID
    assert runtime.instances[SENDER_ID].status.name == "RUNNING"


def test_handler_errors_become_an_error_reply(platform: AgentPlatform, agents: SimpleNamespace, backend) -> None:
    platform.send_message("Broken", MessageEnvelope(participant_id="user-2", text="hi"))

    assert backend.outbound[0]["text"] == "Error: nope"
    assert backend.outbound[0]["participantId"] == "user-2"


def test_complete_ends_the_message_loop(platform: AgentPlatform, agents: SimpleNamespace, runtime) -> None:
    agents.sender.a2a.send_text("Target", "one")

    platform.complete("Target")

    instance = runtime.instances[TARGET_ID]
    assert instance.status.name == "COMPLETED"
    assert instance.output == {"events_processed": 2}


def test_shared_system_agent_acts_for_each_senders_tenant(platform: AgentPlatform, runtime, backend) -> None:
    first = platform.register_agent("First", tenant_id="T1")
    second = platform.register_agent("Second", tenant_id="T2")
    shared = platform.register_agent("Shared", system_scoped=True)

    @shared.on_chat
    def report(ctx):
        yield from shared.knowledge.list()
        ctx.reply(f"{ctx.tenant_id}/{shared.current_tenant()}")

    runtime.register(platform)

    assert first.a2a.send_text("Shared", "hi").text == "T1/T1"
    assert second.a2a.send_text("Shared", "hi").text == "T2/T2"
    assert [request.headers["X-Tenant-Id"] for request in backend.requests] == ["T1", "T2"]
    assert list(runtime.instances) == ["Shared:BuiltIn Workflow"]


def test_queries_do_not_count_as_processed_events(platform: AgentPlatform, agents: SimpleNamespace, runtime) -> None:
    agents.sender.a2a.send_text("Target", "one")
    target = agents.target.definition("BuiltIn Workflow")

    counts = [platform.rpc.query(target, "GetEventsProcessed") for _ in range(3)]

    assert counts == [1, 1, 1]
    assert runtime.instances[TARGET_ID].custom_status["queries"]["GetEventsProcessed"] == 1


def test_errors_raised_by_the_target_keep_their_type(platform: AgentPlatform, runtime) -> None:
    caller = platform.register_agent("Caller", tenant_id="T1")
    forwarder = platform.register_agent("Forwarder", tenant_id="T1")

    @forwarder.on_chat
    def forward(ctx):
        response = yield from forwarder.a2a.send_text("Ghost", ctx.text)
        ctx.reply(response.text)

    runtime.register(platform)

    with pytest.raises(AgentNotFoundError) as info:
        caller.a2a.send_text("Forwarder", "hi")

    assert info.value.agent_name == "Ghost"

"""Tests for signals, updates and queries between clients and workflows."""

from datetime import timedelta

import pytest

from dts_agents import AgentPlatform
from dts_agents.errors import (
    AgentNotFoundError,
    FormatError,
    HandlerNotFoundError,
    RpcTimeoutError,
    TenantIsolationError,
    ValidationError,
    WorkflowNotFoundError,
)


def counter(wf, start=0):
    state = {"count": start, "done": False}

    def add(n):
        state["count"] += n

    def set_to(n):
        if n < 0:
            raise ValidationError("Count must not be negative")
        state["count"] = n
        return n

    def finish():
        state["done"] = True

    def slow(n):
        yield from wf.sleep(timedelta(hours=1))
        state["count"] = n
        return n

    wf.set_signal_handler("Add", add)
    wf.set_signal_handler("Finish", finish)
    wf.set_update_handler("Set", set_to)
    wf.set_update_handler("SlowSet", slow)
    wf.set_query_handler("Count", lambda: state["count"])
    wf.set_query_handler("Plus", lambda n: state["count"] + n)
    yield from wf.wait_condition(lambda: state["done"])
    return state["count"]


@pytest.fixture
def rpc_platform(platform: AgentPlatform, runtime) -> AgentPlatform:
    """Provide a platform with a Counter workflow and a few calling workflows."""
    agent = platform.register_agent("Math", tenant_id="T1", enable_tasks=False)
    agent.add_workflow("Counter", counter)
    rpc = platform.rpc

    @agent.workflow("SetAndRead")
    def set_and_read(wf, value):
        updated = yield from rpc.update("Math:Counter", "Set", value, id_postfix="shared")
        yield from rpc.send_signal("Math:Counter", "Add", 1, id_postfix="shared")
        count = yield from rpc.query("Math:Counter", "Count", id_postfix="shared")
        return {"updated": updated, "count": count}

    @agent.workflow("Rejected")
    def rejected(wf):
        try:
            yield from rpc.update("Math:Counter", "Set", -5, id_postfix="shared")
        except ValidationError as exc:
            return {"error": str(exc)}
        return {"error": None}

    @agent.workflow("Impatient")
    def impatient(wf):
        try:
            yield from rpc.update("Math:Counter", "SlowSet", 9, id_postfix="shared", timeout=60)
        except RpcTimeoutError:
            return "gave up"
        return "answered"

    @agent.workflow("Lost")
    def lost(wf):
        try:
            yield from rpc.send_signal("Math:Counter", "Add", 1, id_postfix="ghost")
        except WorkflowNotFoundError as exc:
            return str(exc)
        return "delivered"

    runtime.register(platform)
    return platform


def _start_counter(platform: AgentPlatform, start: int = 0, postfix: str = "shared") -> str:
    return platform.launcher.start("Math:Counter", start, id_postfix=postfix)


def test_update_returns_the_handler_result(rpc_platform: AgentPlatform) -> None:
    _start_counter(rpc_platform)

    assert rpc_platform.rpc.update("Math:Counter", "Set", 12, id_postfix="shared") == 12
    assert rpc_platform.rpc.query("Math:Counter", "Count", id_postfix="shared") == 12


def test_query_observes_earlier_signals(rpc_platform: AgentPlatform) -> None:
    _start_counter(rpc_platform, 10)

    rpc_platform.rpc.send_signal("Math:Counter", "Add", 5, id_postfix="shared")

    assert rpc_platform.rpc.query("Math:Counter", "Count", id_postfix="shared") == 15
    assert rpc_platform.rpc.query("Math:Counter", "Plus", 100, id_postfix="shared") == 115


def test_handler_errors_reach_the_caller(rpc_platform: AgentPlatform) -> None:
    _start_counter(rpc_platform)

    with pytest.raises(ValidationError, match="negative"):
        rpc_platform.rpc.update("Math:Counter", "Set", -1, id_postfix="shared")
    with pytest.raises(HandlerNotFoundError):
        rpc_platform.rpc.update("Math:Counter", "Reset", id_postfix="shared")
    with pytest.raises(HandlerNotFoundError):
        rpc_platform.rpc.query("Math:Counter", "Average", id_postfix="shared")


def test_closed_workflow_is_queried_from_its_last_snapshot(rpc_platform: AgentPlatform, runtime) -> None:
    workflow_id = _start_counter(rpc_platform, 4)
    rpc_platform.rpc.send_signal("Math:Counter", "Finish", id_postfix="shared")
    assert runtime.instances[workflow_id].status.name == "COMPLETED"

    assert rpc_platform.rpc.query("Math:Counter", "Count", id_postfix="shared") == 4
    with pytest.raises(HandlerNotFoundError):
        rpc_platform.rpc.query("Math:Counter", "Plus", 1, id_postfix="shared")


def test_query_of_a_missing_workflow(rpc_platform: AgentPlatform) -> None:
    with pytest.raises(WorkflowNotFoundError):
        rpc_platform.rpc.query("Math:Counter", "Count", id_postfix="nobody")


def test_client_update_times_out(rpc_platform: AgentPlatform) -> None:
    _start_counter(rpc_platform)

    with pytest.raises(RpcTimeoutError) as info:
        rpc_platform.rpc.update("Math:Counter", "SlowSet", 3, id_postfix="shared", timeout=0.05)

    assert isinstance(info.value, TimeoutError)


@pytest.mark.parametrize(
    ("target", "error"),
    [("Nobody:Counter", AgentNotFoundError), ("Counter", FormatError), ("Math:Missing", WorkflowNotFoundError)],
)
def test_targets_are_resolved_before_anything_is_sent(
    rpc_platform: AgentPlatform, runtime, target: str, error: type
) -> None:
    with pytest.raises(error):
        rpc_platform.rpc.send_signal(target, "Add", 1, id_postfix="shared")

    assert runtime.instances == {}


def test_tenant_scoped_targets_refuse_other_tenants(rpc_platform: AgentPlatform) -> None:
    _start_counter(rpc_platform)

    with pytest.raises(TenantIsolationError):
        rpc_platform.rpc.send_signal("Math:Counter", "Add", 1, id_postfix="shared", tenant_id="T2")


def test_signal_to_a_workflow_that_never_started(rpc_platform: AgentPlatform) -> None:
    with pytest.raises(WorkflowNotFoundError) as info:
        rpc_platform.rpc.send_signal("Math:Counter", "Add", 1, id_postfix="ghost")

    assert "T1:Math:Counter:ghost" in str(info.value)


def test_signal_from_a_workflow_to_one_that_never_started(rpc_platform: AgentPlatform, runtime) -> None:
    result = rpc_platform.launcher.execute("Math:Lost", id_postfix="1")

    assert "T1:Math:Counter:ghost" in result
    assert [name for name, _ in runtime.activity_calls].count("dts_agents.engine.post") == 1


def test_signal_can_start_the_target(rpc_platform: AgentPlatform, runtime) -> None:
    rpc_platform.rpc.send_signal("Math:Counter", "Add", 2, id_postfix="lazy", start=True)

    assert runtime.instances["T1:Math:Counter:lazy"].custom_status["queries"]["Count"] == 2


def test_workflow_to_workflow_update_signal_and_query(rpc_platform: AgentPlatform) -> None:
    _start_counter(rpc_platform)

    result = rpc_platform.launcher.execute("Math:SetAndRead", 20, id_postfix="1")

    assert result == {"updated": 20, "count": 21}


def test_rejection_is_raised_inside_the_calling_workflow(rpc_platform: AgentPlatform) -> None:
    _start_counter(rpc_platform)

    result = rpc_platform.launcher.execute("Math:Rejected", id_postfix="1")

    assert "negative" in result["error"]


def test_workflow_update_times_out_on_a_durable_timer(rpc_platform: AgentPlatform, runtime) -> None:
    _start_counter(rpc_platform)
    rpc_platform.launcher.start("Math:Impatient", id_postfix="1")
    caller = runtime.instances["T1:Math:Impatient:1"]
    assert caller.status.name == "RUNNING"

    runtime.advance(seconds=61)

    assert caller.status.name == "COMPLETED"
    assert caller.output == "gave up"

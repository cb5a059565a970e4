"""Tests for workflow type, workflow ID and task queue naming."""

import pytest

from dts_agents.errors import FormatError, TenantIsolationError, ValidationError
from dts_agents.naming import (
    AgentIdentity,
    ScopingMode,
    WorkflowIdentity,
    build_task_queue_name,
    build_workflow_id,
    build_workflow_type,
    builtin_workflow_name,
    parse_workflow_type,
)


def test_workflow_type_joins_agent_and_workflow() -> None:
    assert build_workflow_type("Support", "Escalation") == "Support:Escalation"


@pytest.mark.parametrize(
    ("agent", "workflow"),
    [("", "Escalation"), ("Support", ""), ("  ", "Escalation"), ("Sup:port", "Escalation"), ("Support", "Esc:alation")],
)
def test_workflow_type_rejects_empty_or_separator_parts(agent: str, workflow: str) -> None:
    with pytest.raises(FormatError):
        build_workflow_type(agent, workflow)


def test_format_errors_are_validation_errors() -> None:
    with pytest.raises(ValidationError):
        build_workflow_type("Support", None)


@pytest.mark.parametrize("value", [None, "", "NoSeparator", "a:b:c", ":Workflow", "Agent:"])
def test_parse_workflow_type_rejects_malformed_values(value) -> None:
    with pytest.raises(FormatError):
        parse_workflow_type(value)


def test_parse_workflow_type_splits_parts() -> None:
    assert parse_workflow_type("Support:BuiltIn Workflow") == ("Support", "BuiltIn Workflow")


def test_tenant_scoped_workflow_id_layout() -> None:
    workflow_id = build_workflow_id("T1", "Support", "Escalation", "42", ScopingMode.TENANT)

    assert workflow_id == "T1:Support:Escalation:42"


def test_system_scoped_workflow_id_has_no_tenant_segment() -> None:
    workflow_id = build_workflow_id("T1", "Support", "Escalation", "42", ScopingMode.SYSTEM)

    assert workflow_id == "Support:Escalation:42"


def test_empty_qualifier_addresses_a_singleton() -> None:
    assert build_workflow_id("T1", "Support", "BuiltIn Workflow", None, ScopingMode.TENANT) == (
        "T1:Support:BuiltIn Workflow"
    )
    assert build_workflow_id(None, "Support", "BuiltIn Workflow", "", ScopingMode.SYSTEM) == (
        "Support:BuiltIn Workflow"
    )


def test_workflow_id_is_idempotent() -> None:
    args = ("T1", "Support", "Escalation", "abc", ScopingMode.TENANT)

    assert build_workflow_id(*args) == build_workflow_id(*args)


def test_tenant_scoped_workflow_id_requires_tenant() -> None:
    with pytest.raises(TenantIsolationError):
        build_workflow_id(None, "Support", "Escalation", "1", ScopingMode.TENANT)


def test_whitespace_qualifier_is_rejected() -> None:
    with pytest.raises(ValidationError):
        build_workflow_id("T1", "Support", "Escalation", "   ", ScopingMode.TENANT)


def test_task_queue_names() -> None:
    assert build_task_queue_name("Support:Escalation", ScopingMode.TENANT, "T1") == "T1:Support:Escalation"
    assert build_task_queue_name("Support:Escalation", ScopingMode.SYSTEM, "T1") == "Support:Escalation"


def test_tenant_ids_cannot_contain_the_separator() -> None:
    with pytest.raises(FormatError):
        build_task_queue_name("Support:Escalation", ScopingMode.TENANT, "T:1")


def test_scoping_prefixes_hold_for_every_identity() -> None:
    for scoping in ScopingMode:
        identity = WorkflowIdentity("Support", "Escalation", "T1", "7", scoping)
        if scoping == ScopingMode.TENANT:
            assert identity.workflow_id.startswith("T1:")
            assert identity.task_queue.startswith("T1:")
        else:
            assert "T1" not in identity.workflow_id
            assert "T1" not in identity.task_queue


def test_builtin_workflow_names() -> None:
    assert builtin_workflow_name() == "BuiltIn Workflow"
    assert builtin_workflow_name("Intake") == "BuiltIn Workflow - Intake"


def test_tenant_scoped_agent_needs_a_tenant() -> None:
    with pytest.raises(TenantIsolationError):
        AgentIdentity("Support")

    assert AgentIdentity("Support", scoping=ScopingMode.SYSTEM).system_scoped

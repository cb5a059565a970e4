"""
Canonical workflow type, workflow ID and task queue names.

Formats (bit-exact, shared with every other process on the task hub):

    workflow type          {Agent}:{Workflow}
    tenant-scoped ID       {Tenant}:{Agent}:{Workflow}:{Qualifier}
    system-scoped ID       {Agent}:{Workflow}:{Qualifier}
    tenant-scoped queue    {Tenant}:{Agent}:{Workflow}
    system-scoped queue    {Agent}:{Workflow}

An empty qualifier drops the trailing segment, which is how singleton
instances such as an agent's built-in workflow are addressed.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import FormatError, TenantIsolationError, ValidationError

SEPARATOR = ":"

BUILTIN_WORKFLOW_NAME = "BuiltIn Workflow"
TASK_WORKFLOW_NAME = "Task Workflow"


class ScopingMode(str, Enum):
    SYSTEM = "system"
    TENANT = "tenant"


def _require_part(value: Optional[str], what: str) -> str:
    if value is None or not str(value).strip():
        raise FormatError(f"{what} must not be empty")
    if SEPARATOR in value:
        raise FormatError(f"{what} '{value}' must not contain '{SEPARATOR}'")
    return value


def validate_tenant_id(tenant_id: Optional[str]) -> str:
    if tenant_id is None or not tenant_id.strip():
        raise TenantIsolationError("Tenant ID is required for tenant-scoped names")
    if SEPARATOR in tenant_id:
        raise FormatError(f"Tenant ID '{tenant_id}' must not contain '{SEPARATOR}'")
    return tenant_id


def builtin_workflow_name(name: Optional[str] = None) -> str:
    """Workflow name of an agent's built-in workflow, optionally named."""
    if name:
        return f"{BUILTIN_WORKFLOW_NAME} - {name}"
    return BUILTIN_WORKFLOW_NAME


def build_workflow_type(agent_name: str, workflow_name: str) -> str:
    agent_name = _require_part(agent_name, "Agent name")
    workflow_name = _require_part(workflow_name, "Workflow name")
    return f"{agent_name}{SEPARATOR}{workflow_name}"


def parse_workflow_type(workflow_type: Optional[str]) -> tuple[str, str]:
    """
    Split ``"Agent:Workflow"`` into its parts.

    Raises FormatError for None, a missing separator, extra separators or
    empty parts.
    """
    if workflow_type is None or not isinstance(workflow_type, str):
        raise FormatError("Workflow type must be a non-empty string")
    parts = workflow_type.split(SEPARATOR)
    if len(parts) != 2:
        raise FormatError(
            f"Workflow type '{workflow_type}' must have the form 'Agent{SEPARATOR}Workflow'"
        )
    agent_name, workflow_name = parts
    _require_part(agent_name, "Agent name")
    _require_part(workflow_name, "Workflow name")
    return agent_name, workflow_name


def build_workflow_id(
    tenant_id: Optional[str],
    agent_name: str,
    workflow_name: str,
    instance_qualifier: Optional[str],
    scoping: ScopingMode,
) -> str:
    workflow_type = build_workflow_type(agent_name, workflow_name)
    if instance_qualifier and not instance_qualifier.strip():
        raise ValidationError("Instance qualifier must not be whitespace")
    prefix = ""
    if scoping == ScopingMode.TENANT:
        prefix = validate_tenant_id(tenant_id) + SEPARATOR
    workflow_id = prefix + workflow_type
    if instance_qualifier:
        workflow_id += SEPARATOR + instance_qualifier
    return workflow_id


def build_task_queue_name(
    workflow_type: str, scoping: ScopingMode, tenant_id: Optional[str] = None
) -> str:
    parse_workflow_type(workflow_type)
    if scoping == ScopingMode.TENANT:
        return validate_tenant_id(tenant_id) + SEPARATOR + workflow_type
    return workflow_type


@dataclass(frozen=True)
class AgentIdentity:
    """An agent as registered by this process. Immutable after registration."""

    name: str
    tenant_id: Optional[str] = None
    scoping: ScopingMode = ScopingMode.TENANT

    def __post_init__(self):
        _require_part(self.name, "Agent name")
        if self.scoping == ScopingMode.TENANT:
            validate_tenant_id(self.tenant_id)

    @property
    def system_scoped(self) -> bool:
        return self.scoping == ScopingMode.SYSTEM


@dataclass(frozen=True)
class WorkflowIdentity:
    """Derived identity of a workflow instance; every string is recomputed on access."""

    agent_name: str
    workflow_name: str
    tenant_id: Optional[str] = None
    instance_qualifier: Optional[str] = None
    scoping: ScopingMode = ScopingMode.TENANT

    @property
    def workflow_type(self) -> str:
        return build_workflow_type(self.agent_name, self.workflow_name)

    @property
    def workflow_id(self) -> str:
        return build_workflow_id(
            self.tenant_id,
            self.agent_name,
            self.workflow_name,
            self.instance_qualifier,
            self.scoping,
        )

    @property
    def task_queue(self) -> str:
        return build_task_queue_name(self.workflow_type, self.scoping, self.tenant_id)

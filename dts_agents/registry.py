"""
Agent and workflow registration.

Every workflow is registered explicitly as a ``WorkflowDefinition`` whose
``kind`` is one of two variants, decided once at registration:

- ``BuiltIn(handlers)``: the agent's message loop, driven by a handler table
- ``Custom(body)``: a user workflow body ``body(wf, *args)``

The registry is owned by one ``AgentPlatform``; it is filled at composition
time and only read afterwards.
"""

from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Union

from .errors import AgentNotFoundError, TenantIsolationError, ValidationError, WorkflowNotFoundError
from .naming import (
    SEPARATOR,
    AgentIdentity,
    ScopingMode,
    WorkflowIdentity,
    build_task_queue_name,
    build_workflow_type,
    builtin_workflow_name,
    parse_workflow_type,
)


@dataclass
class HandlerTable:
    """Handlers hosted by a built-in workflow."""

    chat: Optional[Callable] = None
    data: Optional[Callable] = None
    webhooks: dict[str, Callable] = field(default_factory=dict)


@dataclass(frozen=True)
class BuiltIn:
    handlers: HandlerTable
    tag: str = "builtin"


@dataclass(frozen=True)
class Custom:
    body: Callable
    tag: str = "custom"


WorkflowKind = Union[BuiltIn, Custom]


@dataclass(frozen=True)
class WorkflowDefinition:
    agent: AgentIdentity
    name: str
    kind: WorkflowKind

    @property
    def workflow_type(self) -> str:
        return build_workflow_type(self.agent.name, self.name)

    @property
    def task_queue(self) -> str:
        return build_task_queue_name(self.workflow_type, self.agent.scoping, self.agent.tenant_id)

    @property
    def is_builtin(self) -> bool:
        return isinstance(self.kind, BuiltIn)


@dataclass
class AgentEntry:
    identity: AgentIdentity
    workflows: dict[str, WorkflowDefinition] = field(default_factory=dict)
    default_builtin: Optional[str] = None


class AgentRegistry:
    def __init__(self):
        self._agents: dict[str, AgentEntry] = {}

    def add_agent(self, identity: AgentIdentity) -> AgentEntry:
        if identity.name in self._agents:
            raise ValidationError(f"Agent '{identity.name}' is already registered")
        entry = AgentEntry(identity)
        self._agents[identity.name] = entry
        return entry

    def add_workflow(self, agent_name: str, name: str, kind: WorkflowKind) -> WorkflowDefinition:
        entry = self.entry(agent_name)
        build_workflow_type(entry.identity.name, name)
        definition = WorkflowDefinition(entry.identity, name, kind)
        if name in entry.workflows:
            raise ValidationError(f"Workflow '{name}' is already registered on '{agent_name}'")
        entry.workflows[name] = definition
        if isinstance(kind, BuiltIn) and (
            entry.default_builtin is None or name == builtin_workflow_name()
        ):
            entry.default_builtin = name
        return definition

    def entry(self, agent_name: str) -> AgentEntry:
        try:
            return self._agents[agent_name]
        except KeyError:
            raise AgentNotFoundError(agent_name) from None

    def agent(self, agent_name: str) -> AgentIdentity:
        return self.entry(agent_name).identity

    def has_agent(self, agent_name: str) -> bool:
        return agent_name in self._agents

    def workflow(self, agent_name: str, workflow_name: str) -> WorkflowDefinition:
        entry = self.entry(agent_name)
        try:
            return entry.workflows[workflow_name]
        except KeyError:
            raise WorkflowNotFoundError(
                f"Workflow '{workflow_name}' is not registered on agent '{agent_name}'"
            ) from None

    def workflow_for_type(self, workflow_type: str) -> WorkflowDefinition:
        agent_name, workflow_name = parse_workflow_type(workflow_type)
        return self.workflow(agent_name, workflow_name)

    def default_builtin(self, agent_name: str) -> WorkflowDefinition:
        entry = self.entry(agent_name)
        if entry.default_builtin is None:
            raise WorkflowNotFoundError(f"Agent '{agent_name}' has no built-in workflow")
        return entry.workflows[entry.default_builtin]

    def definitions(self) -> Iterator[WorkflowDefinition]:
        for entry in self._agents.values():
            yield from entry.workflows.values()

    def identity_for(
        self,
        definition: WorkflowDefinition,
        tenant_id: Optional[str] = None,
        instance_qualifier: Optional[str] = None,
    ) -> WorkflowIdentity:
        """
        Identity of an instance of ``definition`` as seen by a caller in
        ``tenant_id``. Tenant-scoped agents only serve their own tenant.
        """
        agent = definition.agent
        if agent.scoping == ScopingMode.TENANT:
            if tenant_id and tenant_id != agent.tenant_id:
                raise TenantIsolationError(
                    f"Agent '{agent.name}' belongs to tenant '{agent.tenant_id}' "
                    f"and cannot be reached from tenant '{tenant_id}'"
                )
            tenant_id = agent.tenant_id
        return WorkflowIdentity(
            agent_name=agent.name,
            workflow_name=definition.name,
            tenant_id=tenant_id,
            instance_qualifier=instance_qualifier,
            scoping=agent.scoping,
        )

    def resolve(
        self,
        target: Union[str, WorkflowDefinition, WorkflowIdentity],
        tenant_id: Optional[str] = None,
        instance_qualifier: Optional[str] = None,
    ) -> tuple[WorkflowDefinition, WorkflowIdentity]:
        """
        Resolve a raw ``"Agent:Workflow"`` type, a definition or an identity.

        Raises FormatError for malformed types and AgentNotFoundError for
        unknown agents, before any engine call is made.
        """
        if isinstance(target, WorkflowIdentity):
            definition = self.workflow(target.agent_name, target.workflow_name)
            return definition, target
        if isinstance(target, WorkflowDefinition):
            definition = target
        else:
            definition = self.workflow_for_type(target)
        return definition, self.identity_for(definition, tenant_id, instance_qualifier)

    def resolve_builtin_target(
        self, target: str, sender: Optional[AgentIdentity] = None
    ) -> WorkflowDefinition:
        """
        Resolve an A2A target: a full ``"Agent:Workflow"`` type, a workflow
        name of the sending agent, or an agent name (its default built-in).
        """
        if target is None or not str(target).strip():
            raise ValidationError("Target workflow must not be empty")
        if SEPARATOR in target:
            return self.workflow_for_type(target)
        if sender is not None:
            entry = self.entry(sender.name)
            if target in entry.workflows:
                return entry.workflows[target]
        if target in self._agents:
            return self.default_builtin(target)
        raise AgentNotFoundError(target)

"""
Starting workflows of the same platform as children or from client code::

    workflow_id = agent.workflows.start("Support:Approvals", request, id_postfix="42")
    result = yield from agent.workflows.execute("Support:Approvals", request)

Inside a workflow the child is scheduled as a sub-orchestration of the
caller, so the tenant and parent are carried in its start input.
"""

import logging
from typing import Optional

from durabletask import task

from . import context
from .engine import Engine
from .errors import WorkflowFailedError
from .rpc import Target, WorkflowRpc
from .workflow import completed

logger = logging.getLogger(__name__)


class SubWorkflowLauncher:
    def __init__(self, rpc: WorkflowRpc, engine: Engine, default_timeout: float = 30.0):
        self._rpc = rpc
        self._engine = engine
        self.default_timeout = default_timeout

    def start(
        self,
        workflow: Target,
        *args,
        id_postfix: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ):
        """
        Start ``workflow`` without waiting for it and return its instance ID.
        From client code a running instance with the same ID is reused.
        """
        _, identity = self._rpc.resolve(workflow, id_postfix=id_postfix, tenant_id=tenant_id)
        start_input = self._rpc.start_input(identity, *args)
        wf = context.current_workflow()
        if wf is None:
            self._engine.start_or_reuse(identity.task_queue, identity.workflow_id, start_input)
            return identity.workflow_id
        wf.logger.info("Starting child workflow %s", identity.workflow_id)
        wf.ctx.call_sub_orchestrator(
            identity.task_queue, input=start_input, instance_id=identity.workflow_id
        )
        return completed(identity.workflow_id)

    def execute(
        self,
        workflow: Target,
        *args,
        id_postfix: Optional[str] = None,
        tenant_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """Start ``workflow`` and wait for its result."""
        _, identity = self._rpc.resolve(workflow, id_postfix=id_postfix, tenant_id=tenant_id)
        start_input = self._rpc.start_input(identity, *args)
        wf = context.current_workflow()
        if wf is not None:
            return self._execute_child(wf, identity, start_input)
        self._engine.start_or_reuse(identity.task_queue, identity.workflow_id, start_input)
        timeout = self.default_timeout if timeout is None else timeout
        return self._engine.wait_for_completion(identity.workflow_id, timeout)

    def _execute_child(self, wf, identity, start_input):
        wf.logger.info("Running child workflow %s", identity.workflow_id)
        try:
            return (
                yield wf.ctx.call_sub_orchestrator(
                    identity.task_queue, input=start_input, instance_id=identity.workflow_id
                )
            )
        except task.TaskFailedError as exc:
            raise WorkflowFailedError(
                f"Child workflow '{identity.workflow_id}' failed: {exc.details.message}"
            ) from exc

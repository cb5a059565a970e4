"""
Engine adapter over the Durable Task SDK client.

Wraps ``TaskHubGrpcClient`` with the handful of calls the rest of the
package needs: start-or-reuse, inbox posting, published status reads and
response polling. Blocking calls can be awaited from async code with
``run_blocking``, which hands them to a thread pool.
"""

import asyncio
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

import grpc
from durabletask import client

from .errors import RpcTimeoutError, WorkflowFailedError, WorkflowNotFoundError
from .protocol import INBOX_EVENT, InboxMessage, RpcResponse, WorkflowStatus

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (
    client.OrchestrationStatus.RUNNING,
    client.OrchestrationStatus.PENDING,
    client.OrchestrationStatus.SUSPENDED,
)
CLOSED_STATUSES = (
    client.OrchestrationStatus.COMPLETED,
    client.OrchestrationStatus.FAILED,
    client.OrchestrationStatus.TERMINATED,
)


class Engine:
    """
    Client-side access to the task hub.

    Args:
        host_address: DTS backend address (e.g., "localhost:8080" for emulator)
        taskhub: DTS task hub name
        poll_interval: Seconds between status reads while waiting for a response
        dts_client: An existing client to use instead of creating one
    """

    def __init__(
        self,
        host_address: str = "localhost:8080",
        taskhub: str = "default",
        *,
        secure_channel: bool = False,
        poll_interval: float = 0.5,
        log_handler: Optional[logging.Handler] = None,
        log_formatter: Optional[logging.Formatter] = None,
        dts_client: Optional[client.TaskHubGrpcClient] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.host_address = host_address
        self.taskhub = taskhub
        self.secure_channel = secure_channel
        self.poll_interval = poll_interval
        self._log_handler = log_handler
        self._log_formatter = log_formatter
        self._client = dts_client or client.TaskHubGrpcClient(
            host_address=host_address,
            metadata=self.metadata,
            secure_channel=secure_channel,
            log_handler=log_handler,
            log_formatter=log_formatter,
        )
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=4)

    @property
    def metadata(self) -> list[tuple[str, str]]:
        return [("taskhub", self.taskhub)]

    @property
    def dts_client(self) -> client.TaskHubGrpcClient:
        return self._client

    async def run_blocking(self, fn: Callable, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: fn(*args, **kwargs))

    def get_state(self, instance_id: str, fetch_payloads: bool = True):
        return self._client.get_orchestration_state(instance_id, fetch_payloads=fetch_payloads)

    def is_active(self, instance_id: str) -> bool:
        state = self.get_state(instance_id, fetch_payloads=False)
        return state is not None and state.runtime_status in ACTIVE_STATUSES

    def start_or_reuse(self, orchestrator_name: str, instance_id: str, input: Any = None) -> bool:
        """
        Start ``orchestrator_name`` as ``instance_id`` unless that instance is
        already running. Returns True when a new instance was scheduled.
        """
        if self.is_active(instance_id):
            logger.debug("Reusing running workflow %s", instance_id)
            return False
        try:
            self._client.schedule_new_orchestration(
                orchestrator_name, input=input, instance_id=instance_id
            )
        except grpc.RpcError as exc:
            if exc.code() == grpc.StatusCode.ALREADY_EXISTS:
                logger.debug("Workflow %s was started concurrently; reusing it", instance_id)
                return False
            raise
        logger.info("Started workflow %s (%s)", instance_id, orchestrator_name)
        return True

    def raise_event(self, instance_id: str, event_name: str, data: Any = None) -> None:
        try:
            self._client.raise_orchestration_event(instance_id, event_name, data=data)
        except grpc.RpcError as exc:
            if exc.code() == grpc.StatusCode.NOT_FOUND:
                raise WorkflowNotFoundError(f"Workflow '{instance_id}' does not exist") from exc
            raise

    def post(self, instance_id: str, message: InboxMessage) -> None:
        logger.debug(
            "Posting %s '%s' to %s", message.kind.value, message.name, instance_id
        )
        self.raise_event(instance_id, INBOX_EVENT, message.model_dump(mode="json"))

    def read_status(self, instance_id: str) -> WorkflowStatus:
        return self.describe(instance_id)[1]

    def describe(self, instance_id: str) -> tuple[bool, WorkflowStatus]:
        """Whether the workflow is still active, and its published status."""
        state = self.get_state(instance_id)
        if state is None:
            raise WorkflowNotFoundError(f"Workflow '{instance_id}' does not exist")
        return state.runtime_status in ACTIVE_STATUSES, parse_status(state.serialized_custom_status)

    def wait_for_response(
        self, instance_id: str, correlation_id: str, timeout: float
    ) -> RpcResponse:
        """Poll the published status until the response for ``correlation_id`` appears."""
        deadline = time.monotonic() + timeout
        while True:
            state = self.get_state(instance_id)
            if state is None:
                raise WorkflowNotFoundError(f"Workflow '{instance_id}' does not exist")
            response = parse_status(state.serialized_custom_status).response(correlation_id)
            if response is not None:
                return response
            if state.runtime_status in CLOSED_STATUSES:
                raise WorkflowFailedError(
                    f"Workflow '{instance_id}' closed ({state.runtime_status.name}) "
                    f"before answering request {correlation_id}"
                )
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RpcTimeoutError(
                    f"No response from '{instance_id}' for request {correlation_id} "
                    f"within {timeout}s"
                )
            time.sleep(min(self.poll_interval, remaining))

    def wait_for_completion(self, instance_id: str, timeout: float) -> Any:
        """Wait for the workflow to finish and return its decoded output."""
        try:
            state = self._client.wait_for_orchestration_completion(
                instance_id, fetch_payloads=True, timeout=int(max(1, timeout))
            )
        except TimeoutError as exc:
            raise RpcTimeoutError(
                f"Workflow '{instance_id}' did not complete within {timeout}s"
            ) from exc
        if state is None:
            raise WorkflowNotFoundError(f"Workflow '{instance_id}' does not exist")
        if state.runtime_status != client.OrchestrationStatus.COMPLETED:
            message = state.runtime_status.name
            if state.failure_details is not None:
                message = f"{message}: {state.failure_details.message}"
            raise WorkflowFailedError(f"Workflow '{instance_id}' did not complete: {message}")
        return decode(state.serialized_output)

    def terminate(self, instance_id: str, output: Any = None) -> None:
        self._client.terminate_orchestration(instance_id, output=output)

    def close(self) -> None:
        """Release the thread pool behind run_blocking, unless it was passed in."""
        if self._owns_executor:
            self._executor.shutdown(wait=False)


def decode(serialized: Optional[str]) -> Any:
    if not serialized:
        return None
    return json.loads(serialized)


def parse_status(serialized: Optional[str]) -> WorkflowStatus:
    raw = decode(serialized)
    if not isinstance(raw, dict):
        return WorkflowStatus()
    return WorkflowStatus.model_validate(raw)

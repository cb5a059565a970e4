"""Test configuration and fixtures.

``FakeRuntime`` runs orchestrators and activities in-process, one event at a
time, with real durabletask task objects. Payloads are JSON round-tripped
like on the wire. Timers only fire when the test advances the clock.
"""

import inspect
import itertools
import json
import uuid
from collections import defaultdict, deque
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Any, Callable, Optional

import grpc
import httpx
import pytest
from durabletask import client, task
from durabletask.internal import orchestrator_service_pb2 as pb

from dts_agents import AgentPlatform, AgentSettings

START_TIME = datetime(2025, 1, 1, 12, 0, 0)

Status = client.OrchestrationStatus
CLOSED = (Status.COMPLETED, Status.FAILED, Status.TERMINATED)


def _roundtrip(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(json.dumps(value))


def failure_details(exc: BaseException) -> pb.TaskFailureDetails:
    return pb.TaskFailureDetails(errorType=type(exc).__name__, errorMessage=str(exc))


class FakeRpcError(grpc.RpcError):
    def __init__(self, code: grpc.StatusCode, details: str = ""):
        super().__init__(details)
        self._code = code
        self._details = details

    def code(self) -> grpc.StatusCode:
        return self._code

    def details(self) -> str:
        return self._details


class Instance:
    def __init__(self, instance_id: str, name: str, input: Any):
        self.instance_id = instance_id
        self.name = name
        self.input = input
        self.status = Status.PENDING
        self.custom_status: Any = None
        self.output: Any = None
        self.failure: Optional[SimpleNamespace] = None
        self.error: Optional[BaseException] = None
        self.generator = None
        self.waiting_on: Optional[task.Task] = None
        self.buffered: dict[str, deque] = defaultdict(deque)
        self.waiters: dict[str, deque] = defaultdict(deque)
        self.continue_with: Optional[tuple[Any, bool]] = None
        self.continued = 0
        self.parent: Optional["Instance"] = None
        self.parent_task: Optional[task.CompletableTask] = None

    @property
    def done(self) -> bool:
        return self.status in CLOSED


class FakeActivityContext:
    def __init__(self, orchestration_id: str, task_id: int):
        self.orchestration_id = orchestration_id
        self.task_id = task_id


class FakeOrchestrationContext:
    """Stand-in for durabletask's OrchestrationContext."""

    def __init__(self, runtime: "FakeRuntime", instance: Instance):
        self._runtime = runtime
        self._instance = instance

    @property
    def instance_id(self) -> str:
        return self._instance.instance_id

    @property
    def is_replaying(self) -> bool:
        return False

    @property
    def current_utc_datetime(self) -> datetime:
        return self._runtime.now

    def call_activity(self, activity, *, input=None, retry_policy=None):
        return self._runtime.schedule_activity(self._instance, activity, input, retry_policy)

    def call_sub_orchestrator(self, orchestrator, *, input=None, instance_id=None, retry_policy=None):
        return self._runtime.schedule_child(self._instance, orchestrator, input, instance_id)

    def wait_for_external_event(self, name: str):
        return self._runtime.wait_for_event(self._instance, name)

    def create_timer(self, fire_at):
        return self._runtime.create_timer(self._instance, fire_at)

    def set_custom_status(self, custom_status: Any) -> None:
        self._instance.custom_status = _roundtrip(custom_status)

    def continue_as_new(self, new_input: Any, *, save_events: bool = False) -> None:
        self._instance.continue_with = (new_input, save_events)


class FakeRuntime:
    def __init__(self):
        self.now = START_TIME
        self.orchestrators: dict[str, Callable] = {}
        self.activities: dict[str, Callable] = {}
        self.instances: dict[str, Instance] = {}
        self.activity_calls: list[tuple[str, Any]] = []
        self._queue: deque = deque()
        self._timers: list = []
        self._sequence = itertools.count(1)
        self._draining = False

    def register(self, platform: AgentPlatform) -> None:
        for orchestrator in platform.orchestrators():
            self.orchestrators[orchestrator.__name__] = orchestrator
        self.activities.update(platform.activities())

    # --- driving ---

    def drain(self) -> None:
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue:
                self._queue.popleft()()
        finally:
            self._draining = False

    def advance(self, delta: Optional[timedelta] = None, **kwargs) -> None:
        self.now += delta if delta is not None else timedelta(**kwargs)
        self._queue.append(self._fire_due_timers)
        self.drain()

    def _step(self, instance: Instance, value: Any = None, error: Optional[BaseException] = None) -> None:
        while True:
            try:
                if error is not None:
                    pending = instance.generator.throw(error)
                else:
                    pending = instance.generator.send(value)
            except StopIteration as stop:
                self._complete(instance, stop.value)
                return
            except Exception as exc:
                self._fail(instance, exc)
                return
            if not pending.is_complete:
                instance.waiting_on = pending
                return
            value, error = self._outcome(pending)

    @staticmethod
    def _outcome(pending: task.Task):
        if pending.is_failed:
            return None, pending.get_exception()
        return pending.get_result(), None

    def _poke(self, instance: Instance) -> None:
        pending = instance.waiting_on
        if instance.done or pending is None or not pending.is_complete:
            return
        instance.waiting_on = None
        value, error = self._outcome(pending)
        self._step(instance, value, error)

    def _begin(self, instance: Instance) -> None:
        orchestrator = self.orchestrators.get(instance.name)
        if orchestrator is None:
            self._fail(instance, LookupError(f"Orchestrator '{instance.name}' is not registered"))
            return
        instance.status = Status.RUNNING
        result = orchestrator(FakeOrchestrationContext(self, instance), instance.input)
        if not inspect.isgenerator(result):
            self._complete(instance, result)
            return
        instance.generator = result
        self._step(instance)

    def _complete(self, instance: Instance, output: Any) -> None:
        if instance.continue_with is not None:
            new_input, save_events = instance.continue_with
            instance.continue_with = None
            instance.continued += 1
            instance.input = _roundtrip(new_input)
            instance.generator = None
            instance.waiting_on = None
            instance.waiters.clear()
            if not save_events:
                instance.buffered.clear()
            self._queue.append(lambda: self._begin(instance))
            return
        instance.output = _roundtrip(output)
        instance.status = Status.COMPLETED
        self._notify_parent(instance)

    def _fail(self, instance: Instance, exc: BaseException) -> None:
        instance.status = Status.FAILED
        instance.error = exc
        instance.failure = SimpleNamespace(message=str(exc), error_type=type(exc).__name__)
        self._notify_parent(instance)

    def _notify_parent(self, instance: Instance) -> None:
        parent_task = instance.parent_task
        if parent_task is None or parent_task.is_complete:
            return
        if instance.status == Status.COMPLETED:
            parent_task.complete(instance.output)
        else:
            parent_task.fail(
                f"Sub-orchestration {instance.instance_id} failed",
                pb.TaskFailureDetails(
                    errorType=instance.failure.error_type, errorMessage=instance.failure.message
                ),
            )
        self._poke(instance.parent)

    # --- orchestration context operations ---

    def start(self, name: str, instance_id: str, input: Any) -> Instance:
        existing = self.instances.get(instance_id)
        if existing is not None and not existing.done:
            raise FakeRpcError(
                grpc.StatusCode.ALREADY_EXISTS, f"Instance '{instance_id}' already exists"
            )
        instance = Instance(instance_id, name, _roundtrip(input))
        self.instances[instance_id] = instance
        self._queue.append(lambda: self._begin(instance))
        return instance

    def schedule_activity(self, instance: Instance, activity, input: Any, retry_policy) -> task.Task:
        name = activity if isinstance(activity, str) else activity.__name__
        pending = task.CompletableTask()
        payload = _roundtrip(input)
        task_id = next(self._sequence)
        attempts = retry_policy.max_number_of_attempts if retry_policy is not None else 1

        def run():
            activity_fn = self.activities[name]
            for attempt in range(1, attempts + 1):
                self.activity_calls.append((name, payload))
                try:
                    result = activity_fn(FakeActivityContext(instance.instance_id, task_id), payload)
                except Exception as exc:
                    if attempt == attempts:
                        pending.fail(f"Activity '{name}' failed: {exc}", failure_details(exc))
                else:
                    pending.complete(_roundtrip(result))
                    break
            self._poke(instance)

        self._queue.append(run)
        return pending

    def schedule_child(self, parent: Instance, orchestrator, input: Any, instance_id: Optional[str]) -> task.Task:
        name = orchestrator if isinstance(orchestrator, str) else orchestrator.__name__
        pending = task.CompletableTask()
        instance_id = instance_id or uuid.uuid4().hex

        def run():
            existing = self.instances.get(instance_id)
            if existing is not None and not existing.done:
                pending.fail(
                    f"Instance '{instance_id}' already exists",
                    pb.TaskFailureDetails(
                        errorType="OrchestrationAlreadyExistsError",
                        errorMessage=f"Instance '{instance_id}' already exists",
                    ),
                )
                self._poke(parent)
                return
            child = Instance(instance_id, name, _roundtrip(input))
            child.parent = parent
            child.parent_task = pending
            self.instances[instance_id] = child
            self._begin(child)

        self._queue.append(run)
        return pending

    def wait_for_event(self, instance: Instance, name: str) -> task.Task:
        key = name.lower()
        pending = task.CompletableTask()
        if instance.buffered[key]:
            pending.complete(instance.buffered[key].popleft())
        else:
            instance.waiters[key].append(pending)
        return pending

    def create_timer(self, instance: Instance, fire_at) -> task.Task:
        if isinstance(fire_at, timedelta):
            fire_at = self.now + fire_at
        pending = task.CompletableTask()
        self._timers.append((fire_at, next(self._sequence), pending, instance))
        if fire_at <= self.now:
            self._queue.append(self._fire_due_timers)
        return pending

    def _fire_due_timers(self) -> None:
        due = sorted(
            (entry for entry in self._timers if entry[0] <= self.now),
            key=lambda entry: (entry[0], entry[1]),
        )
        for entry in due:
            self._timers.remove(entry)
            fire_at, _, pending, instance = entry
            if instance.done or pending.is_complete:
                continue
            pending.complete(fire_at)
            self._poke(instance)

    # --- client operations ---

    def raise_event(self, instance_id: str, name: str, data: Any) -> None:
        instance = self.instances.get(instance_id)
        if instance is None:
            raise FakeRpcError(grpc.StatusCode.NOT_FOUND, f"Instance '{instance_id}' not found")
        payload = _roundtrip(data)

        def deliver():
            if instance.done:
                return
            key = name.lower()
            if instance.waiters[key]:
                instance.waiters[key].popleft().complete(payload)
                self._poke(instance)
            else:
                instance.buffered[key].append(payload)

        self._queue.append(deliver)
        self.drain()

    def terminate(self, instance_id: str, output: Any) -> None:
        instance = self.instances[instance_id]
        if instance.done:
            return
        instance.status = Status.TERMINATED
        instance.output = _roundtrip(output)
        instance.waiting_on = None


class FakeTaskHubClient:
    """Stand-in for ``TaskHubGrpcClient`` backed by a FakeRuntime."""

    def __init__(self, runtime: FakeRuntime):
        self._runtime = runtime

    def schedule_new_orchestration(self, orchestrator, *, input=None, instance_id=None, start_at=None):
        name = orchestrator if isinstance(orchestrator, str) else orchestrator.__name__
        instance_id = instance_id or uuid.uuid4().hex
        self._runtime.start(name, instance_id, input)
        self._runtime.drain()
        return instance_id

    def get_orchestration_state(self, instance_id: str, *, fetch_payloads: bool = True):
        instance = self._runtime.instances.get(instance_id)
        if instance is None:
            return None

        def dump(value):
            if not fetch_payloads or value is None:
                return None
            return json.dumps(value)

        return SimpleNamespace(
            instance_id=instance_id,
            name=instance.name,
            runtime_status=instance.status,
            serialized_input=dump(instance.input),
            serialized_output=dump(instance.output),
            serialized_custom_status=dump(instance.custom_status),
            failure_details=instance.failure,
        )

    def raise_orchestration_event(self, instance_id: str, event_name: str, *, data=None):
        self._runtime.raise_event(instance_id, event_name, data)

    def wait_for_orchestration_completion(self, instance_id: str, *, fetch_payloads: bool = True, timeout: int = 60):
        self._runtime.drain()
        instance = self._runtime.instances.get(instance_id)
        if instance is None:
            return None
        if not instance.done:
            raise TimeoutError(f"Timed out waiting for '{instance_id}'")
        return self.get_orchestration_state(instance_id, fetch_payloads=fetch_payloads)

    def terminate_orchestration(self, instance_id: str, *, output=None, recursive: bool = True):
        self._runtime.terminate(instance_id, output)


class FakeBackend:
    """In-memory backend API served through ``httpx.MockTransport``."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.documents: dict[tuple[str, str], dict] = {}
        self.knowledge: dict[tuple[str, str, str], dict] = {}
        self.outbound: list[dict] = []
        self.usage: list[dict] = []
        self._ids = itertools.count(1)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        tenant = request.headers.get("X-Tenant-Id", "")
        path = request.url.path
        params = dict(request.url.params)
        body = json.loads(request.content) if request.content else None

        if path == "/api/agent/documents/save":
            document = dict(body)
            document.setdefault("id", f"doc-{next(self._ids)}")
            self.documents[(tenant, document["id"])] = document
            return httpx.Response(200, json=document)
        if path == "/api/agent/documents/get":
            document = self.documents.get((tenant, params["id"]))
            return httpx.Response(200, json=document) if document else httpx.Response(404)
        if path == "/api/agent/documents/get-by-key":
            for (doc_tenant, _), document in self.documents.items():
                if doc_tenant == tenant and document.get("type") == body["type"] and document.get("key") == body["key"]:
                    return httpx.Response(200, json=document)
            return httpx.Response(404)
        if path == "/api/agent/documents/query":
            found = [
                document
                for (doc_tenant, _), document in self.documents.items()
                if doc_tenant == tenant
                and document.get("agentId") == body.get("agentId")
                and (body.get("type") is None or document.get("type") == body["type"])
            ]
            return httpx.Response(200, json=found[: body.get("limit", 100)])
        if path == "/api/agent/documents/update":
            if (tenant, body["id"]) not in self.documents:
                return httpx.Response(404)
            self.documents[(tenant, body["id"])] = body
            return httpx.Response(200)
        if path == "/api/agent/documents/delete":
            if self.documents.pop((tenant, params["id"]), None) is None:
                return httpx.Response(404)
            return httpx.Response(200)

        if path == "/api/agent/knowledge" and request.method == "PUT":
            self.knowledge[(tenant, body["agent"], body["name"])] = body
            return httpx.Response(200)
        if path == "/api/agent/knowledge" and request.method == "DELETE":
            if self.knowledge.pop((tenant, params["agent"], params["name"]), None) is None:
                return httpx.Response(404)
            return httpx.Response(200)
        if path == "/api/agent/knowledge/latest":
            item = self.knowledge.get((tenant, params["agent"], params["name"]))
            return httpx.Response(200, json=item) if item else httpx.Response(404)
        if path == "/api/agent/knowledge/list":
            items = [
                item
                for (item_tenant, agent, _), item in self.knowledge.items()
                if item_tenant == tenant and agent == params["agent"]
            ]
            return httpx.Response(200, json=items)

        if path.startswith("/api/agent/conversation/outbound/"):
            self.outbound.append({"kind": path.rsplit("/", 1)[-1], "tenant": tenant, **body})
            return httpx.Response(200)
        if path == "/api/agent/usage/report":
            self.usage.append({"tenant": tenant, **body})
            return httpx.Response(200)
        if path == "/api/agent/conversation/history":
            page, page_size = int(params.get("page", 1)), int(params.get("pageSize", 10))
            found = [
                message
                for message in self.outbound
                if message["tenant"] == tenant
                and message.get("workflowType") == params["workflowType"]
                and message.get("participantId") == params["participantId"]
            ]
            return httpx.Response(200, json=found[(page - 1) * page_size : page * page_size])
        return httpx.Response(404, json={"error": f"no route {request.method} {path}"})


@pytest.fixture
def runtime() -> FakeRuntime:
    """Provide an empty in-memory durabletask runtime."""
    return FakeRuntime()


@pytest.fixture
def backend() -> FakeBackend:
    """Provide an in-memory backend API."""
    return FakeBackend()


@pytest.fixture
def settings() -> AgentSettings:
    """Provide test settings with short timeouts."""
    return AgentSettings(
        dts_host="localhost:8080",
        taskhub="test",
        server_url="http://backend.test",
        api_key="test-key",
        rpc_timeout_seconds=2.0,
        rpc_poll_interval_seconds=0.01,
        activity_max_attempts=2,
        max_events_per_run=1000,
        log_level="DEBUG",
        log_format="text",
    )


@pytest.fixture
def make_platform(
    runtime: FakeRuntime, backend: FakeBackend, settings: AgentSettings
) -> Callable[..., AgentPlatform]:
    """Provide a factory for platforms wired to the fake runtime and backend.

    Keyword arguments override settings fields.
    """

    def build(**overrides: Any) -> AgentPlatform:
        return AgentPlatform(
            settings.model_copy(update=overrides),
            dts_client=FakeTaskHubClient(runtime),
            backend_transport=backend.transport,
            configure_logs=False,
        )

    return build


@pytest.fixture
def platform(make_platform: Callable[..., AgentPlatform]) -> AgentPlatform:
    """Provide a platform wired to the fake runtime and backend.

    Register agents first, then call ``runtime.register(platform)``.
    """
    return make_platform()

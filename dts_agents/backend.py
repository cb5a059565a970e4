"""
HTTP collaborators for document, knowledge and conversation storage, and
for usage reporting.

Every request is scoped to a tenant with the ``X-Tenant-Id`` header and to
an agent by name. Connection failures are retried by the transport; error
statuses raise BackendError. The services are registered as dispatcher
operations so workflows reach them through activities.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .dispatch import OperationRegistry
from .errors import BackendError, ValidationError
from .messaging import MessageType, OutboundMessage

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-Id"

OP_DOCUMENT_SAVE = "dts_agents.documents.save"
OP_DOCUMENT_GET = "dts_agents.documents.get"
OP_DOCUMENT_GET_BY_KEY = "dts_agents.documents.get_by_key"
OP_DOCUMENT_QUERY = "dts_agents.documents.query"
OP_DOCUMENT_UPDATE = "dts_agents.documents.update"
OP_DOCUMENT_DELETE = "dts_agents.documents.delete"
OP_KNOWLEDGE_GET = "dts_agents.knowledge.get"
OP_KNOWLEDGE_UPDATE = "dts_agents.knowledge.update"
OP_KNOWLEDGE_DELETE = "dts_agents.knowledge.delete"
OP_KNOWLEDGE_LIST = "dts_agents.knowledge.list"
OP_MESSAGE_SEND = "dts_agents.messages.send"
OP_MESSAGE_HISTORY = "dts_agents.messages.history"
OP_USAGE_REPORT = "dts_agents.usage.report"


class WireModel(BaseModel):
    """Backend payloads use camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Document(WireModel):
    id: Optional[str] = None
    key: Optional[str] = None
    type: Optional[str] = None
    content: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    agent_id: Optional[str] = None
    workflow_id: Optional[str] = None
    participant_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class DocumentQuery(WireModel):
    type: Optional[str] = None
    key: Optional[str] = None
    participant_id: Optional[str] = None
    metadata_filters: dict[str, Any] = Field(default_factory=dict)
    limit: int = Field(default=100, ge=1)
    skip: int = Field(default=0, ge=0)
    sort_by: Optional[str] = None
    sort_descending: bool = True
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None


class Knowledge(WireModel):
    id: Optional[str] = None
    name: str
    content: str = ""
    type: Optional[str] = None
    version: Optional[str] = None
    agent: Optional[str] = None
    tenant_id: Optional[str] = None
    created_at: Optional[datetime] = None


class MetricValue(WireModel):
    category: str
    type: str
    value: float
    unit: str = "count"


class UsageReport(WireModel):
    """Usage of one model call or unit of work, e.g. token counts."""

    tenant_id: Optional[str] = None
    participant_id: Optional[str] = None
    workflow_id: Optional[str] = None
    workflow_type: Optional[str] = None
    request_id: Optional[str] = None
    agent_name: Optional[str] = None
    model: Optional[str] = None
    custom_identifier: Optional[str] = None
    metrics: list[MetricValue] = Field(default_factory=list)
    metadata: Optional[dict[str, str]] = None


class BackendClient:
    """
    Thin ``httpx`` client for the backend API.

    Args:
        base_url: Backend root URL
        api_key: Sent as a bearer token when set
        timeout: Per-request timeout in seconds
        retries: Connection retries performed by the transport
        transport: Transport override (tests pass ``httpx.MockTransport``)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        retries: int = 3,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._http = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport or httpx.HTTPTransport(retries=retries),
        )

    def close(self) -> None:
        self._http.close()

    def request(
        self,
        method: str,
        path: str,
        *,
        tenant_id: str,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        allow_not_found: bool = False,
    ) -> Any:
        if not tenant_id:
            raise ValidationError("Backend calls require a tenant ID")
        params = {key: value for key, value in (params or {}).items() if value is not None}
        response = self._http.request(
            method, path, params=params, json=json, headers={TENANT_HEADER: tenant_id}
        )
        if response.status_code == 404 and allow_not_found:
            return None
        if response.is_error:
            logger.warning(
                "Backend %s %s failed with %s", method, path, response.status_code,
                extra={"tenant_id": tenant_id},
            )
            raise BackendError(
                f"{method} {path} failed with {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        return response.json()


def _delete(backend: BackendClient, path: str, tenant_id: str, params: dict) -> bool:
    """DELETE that reports a missing resource as False."""
    try:
        backend.request("DELETE", path, tenant_id=tenant_id, params=params)
    except BackendError as exc:
        if exc.status_code == 404:
            return False
        raise
    return True


class DocumentService:
    def __init__(self, backend: BackendClient):
        self._backend = backend

    def save(self, tenant_id: str, agent: str, document: Document) -> Document:
        document = document.model_copy(update={"agent_id": document.agent_id or agent})
        body = self._backend.request(
            "POST", "api/agent/documents/save", tenant_id=tenant_id, json=document.to_wire()
        )
        return Document.model_validate(body) if body else document

    def get(self, tenant_id: str, agent: str, document_id: str) -> Optional[Document]:
        body = self._backend.request(
            "GET",
            "api/agent/documents/get",
            tenant_id=tenant_id,
            params={"id": document_id, "agentId": agent},
            allow_not_found=True,
        )
        return Document.model_validate(body) if body else None

    def get_by_key(self, tenant_id: str, agent: str, type: str, key: str) -> Optional[Document]:
        body = self._backend.request(
            "POST",
            "api/agent/documents/get-by-key",
            tenant_id=tenant_id,
            json={"type": type, "key": key, "agentId": agent},
            allow_not_found=True,
        )
        return Document.model_validate(body) if body else None

    def query(self, tenant_id: str, agent: str, query: DocumentQuery) -> list[Document]:
        body = self._backend.request(
            "POST",
            "api/agent/documents/query",
            tenant_id=tenant_id,
            json={**query.to_wire(), "agentId": agent},
        )
        return [Document.model_validate(item) for item in body or []]

    def update(self, tenant_id: str, agent: str, document: Document) -> bool:
        if not document.id:
            raise ValidationError("Document ID is required for updates")
        document = document.model_copy(update={"agent_id": document.agent_id or agent})
        self._backend.request(
            "POST", "api/agent/documents/update", tenant_id=tenant_id, json=document.to_wire()
        )
        return True

    def delete(self, tenant_id: str, agent: str, document_id: str) -> bool:
        return _delete(
            self._backend, "api/agent/documents/delete", tenant_id, {"id": document_id, "agentId": agent}
        )


class KnowledgeCache:
    """
    Knowledge items by tenant, agent and name, each kept for ``ttl`` seconds.
    A ``ttl`` of 0 disables caching.
    """

    def __init__(self, ttl: float = 600.0, clock=time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[tuple[str, str, str], tuple[float, Knowledge]] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.ttl > 0

    def get(self, key: tuple[str, str, str]) -> Optional[Knowledge]:
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, item = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
        logger.debug("Knowledge cache hit: %s", "/".join(key))
        return item.model_copy()

    def set(self, key: tuple[str, str, str], item: Knowledge) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl, item)

    def invalidate(self, key: tuple[str, str, str]) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class KnowledgeService:
    def __init__(self, backend: BackendClient, cache: Optional[KnowledgeCache] = None):
        self._backend = backend
        self.cache = cache if cache is not None else KnowledgeCache(ttl=0)

    def get(self, tenant_id: str, agent: str, name: str) -> Optional[Knowledge]:
        key = (tenant_id, agent, name)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        body = self._backend.request(
            "GET",
            "api/agent/knowledge/latest",
            tenant_id=tenant_id,
            params={"name": name, "agent": agent},
            allow_not_found=True,
        )
        if not body:
            return None
        item = Knowledge.model_validate(body)
        self.cache.set(key, item)
        return item

    def update(
        self, tenant_id: str, agent: str, name: str, content: str, type: Optional[str] = None
    ) -> bool:
        knowledge = Knowledge(name=name, content=content, type=type, agent=agent, tenant_id=tenant_id)
        self._backend.request("PUT", "api/agent/knowledge", tenant_id=tenant_id, json=knowledge.to_wire())
        self.cache.invalidate((tenant_id, agent, name))
        return True

    def delete(self, tenant_id: str, agent: str, name: str) -> bool:
        self.cache.invalidate((tenant_id, agent, name))
        return _delete(self._backend, "api/agent/knowledge", tenant_id, {"name": name, "agent": agent})

    def list(self, tenant_id: str, agent: str) -> list[Knowledge]:
        body = self._backend.request(
            "GET", "api/agent/knowledge/list", tenant_id=tenant_id, params={"agent": agent}
        )
        return [Knowledge.model_validate(item) for item in body or []]


class MessageService:
    def __init__(self, backend: BackendClient):
        self._backend = backend

    def send(self, message: OutboundMessage) -> None:
        kind = "data" if message.type == MessageType.DATA else "chat"
        self._backend.request(
            "POST",
            f"api/agent/conversation/outbound/{kind}",
            tenant_id=message.tenant_id,
            json={
                to_camel(key): value
                for key, value in message.model_dump(mode="json", exclude_none=True).items()
            },
        )

    def history(
        self,
        tenant_id: str,
        workflow_type: str,
        participant_id: str,
        scope: Optional[str] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> list[dict[str, Any]]:
        body = self._backend.request(
            "GET",
            "api/agent/conversation/history",
            tenant_id=tenant_id,
            params={
                "workflowType": workflow_type,
                "participantId": participant_id,
                "scope": scope,
                "page": page,
                "pageSize": page_size,
            },
        )
        return list(body or [])


class UsageService:
    """Best-effort usage reporting: a failed report is logged, never raised."""

    def __init__(self, backend: BackendClient):
        self._backend = backend

    def report(self, report: UsageReport) -> bool:
        if not report.tenant_id:
            raise ValidationError("Usage reports require a tenant ID")
        try:
            self._backend.request(
                "POST", "api/agent/usage/report", tenant_id=report.tenant_id, json=report.to_wire()
            )
        except (BackendError, httpx.HTTPError) as exc:
            logger.warning(
                "Usage report for %s could not be delivered: %s", report.agent_name, exc,
                extra={"tenant_id": report.tenant_id},
            )
            return False
        logger.debug(
            "Reported %d usage metrics for %s", len(report.metrics), report.agent_name,
            extra={"tenant_id": report.tenant_id},
        )
        return True


def _dump(model: Optional[BaseModel]) -> Optional[dict]:
    if model is None:
        return None
    return model.model_dump(mode="json", by_alias=True)


def register_backend_operations(
    operations: OperationRegistry,
    documents: DocumentService,
    knowledge: KnowledgeService,
    messages: MessageService,
    usage: UsageService,
) -> None:
    """Expose the backend services as dispatcher operations with JSON payloads."""

    operations.register(
        OP_DOCUMENT_SAVE,
        lambda p: _dump(documents.save(p["tenant_id"], p["agent"], Document.model_validate(p["document"]))),
    )
    operations.register(
        OP_DOCUMENT_GET,
        lambda p: _dump(documents.get(p["tenant_id"], p["agent"], p["id"])),
    )
    operations.register(
        OP_DOCUMENT_GET_BY_KEY,
        lambda p: _dump(documents.get_by_key(p["tenant_id"], p["agent"], p["type"], p["key"])),
    )
    operations.register(
        OP_DOCUMENT_QUERY,
        lambda p: [
            _dump(doc)
            for doc in documents.query(p["tenant_id"], p["agent"], DocumentQuery.model_validate(p["query"]))
        ],
    )
    operations.register(
        OP_DOCUMENT_UPDATE,
        lambda p: documents.update(p["tenant_id"], p["agent"], Document.model_validate(p["document"])),
    )
    operations.register(
        OP_DOCUMENT_DELETE,
        lambda p: documents.delete(p["tenant_id"], p["agent"], p["id"]),
    )
    operations.register(
        OP_KNOWLEDGE_GET,
        lambda p: _dump(knowledge.get(p["tenant_id"], p["agent"], p["name"])),
    )
    operations.register(
        OP_KNOWLEDGE_UPDATE,
        lambda p: knowledge.update(p["tenant_id"], p["agent"], p["name"], p["content"], p.get("type")),
    )
    operations.register(
        OP_KNOWLEDGE_DELETE,
        lambda p: knowledge.delete(p["tenant_id"], p["agent"], p["name"]),
    )
    operations.register(
        OP_KNOWLEDGE_LIST,
        lambda p: [_dump(item) for item in knowledge.list(p["tenant_id"], p["agent"])],
    )
    operations.register(
        OP_MESSAGE_SEND,
        lambda p: messages.send(OutboundMessage.model_validate(p)),
    )
    operations.register(
        OP_MESSAGE_HISTORY,
        lambda p: messages.history(
            p["tenant_id"], p["workflow_type"], p["participant_id"], p.get("scope"),
            p.get("page", 1), p.get("page_size", 10),
        ),
    )
    operations.register(
        OP_USAGE_REPORT,
        lambda p: usage.report(UsageReport.model_validate(p)),
    )

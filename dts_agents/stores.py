"""
Document, knowledge and conversation collections of an agent.

Every method goes through the context-aware dispatcher: called from client
code it returns the value, called from a workflow it returns a generator::

    doc = agent.documents.get(doc_id)                 # client
    doc = yield from agent.documents.get(doc_id)      # workflow
"""

from typing import Optional

from . import context
from .backend import (
    OP_DOCUMENT_DELETE,
    OP_DOCUMENT_GET,
    OP_DOCUMENT_GET_BY_KEY,
    OP_DOCUMENT_QUERY,
    OP_DOCUMENT_SAVE,
    OP_DOCUMENT_UPDATE,
    OP_KNOWLEDGE_DELETE,
    OP_KNOWLEDGE_GET,
    OP_KNOWLEDGE_LIST,
    OP_KNOWLEDGE_UPDATE,
    OP_MESSAGE_HISTORY,
    Document,
    DocumentQuery,
    Knowledge,
)
from .dispatch import ContextAwareExecutor
from .errors import ValidationError


def _document(raw) -> Optional[Document]:
    return Document.model_validate(raw) if raw else None


def _documents(raw) -> list[Document]:
    return [Document.model_validate(item) for item in raw or []]


def _knowledge(raw) -> Optional[Knowledge]:
    return Knowledge.model_validate(raw) if raw else None


def _knowledge_list(raw) -> list[Knowledge]:
    return [Knowledge.model_validate(item) for item in raw or []]


class AgentCollection:
    def __init__(self, agent, executor: ContextAwareExecutor):
        self._agent = agent
        self._executor = executor

    def _payload(self, tenant_id: Optional[str], **values) -> dict:
        payload = {"tenant_id": self._agent.resolve_tenant(tenant_id), "agent": self._agent.name}
        payload.update(values)
        return payload


class DocumentCollection(AgentCollection):
    def save(self, document: Document, tenant_id: Optional[str] = None):
        return self._executor.execute(
            OP_DOCUMENT_SAVE,
            self._payload(tenant_id, document=document.model_dump(mode="json", by_alias=True)),
            convert=_document,
        )

    def get(self, document_id: str, tenant_id: Optional[str] = None):
        if not document_id:
            raise ValidationError("Document ID must not be empty")
        return self._executor.execute(
            OP_DOCUMENT_GET, self._payload(tenant_id, id=document_id), convert=_document
        )

    def get_by_key(self, type: str, key: str, tenant_id: Optional[str] = None):
        if not type or not key:
            raise ValidationError("Document type and key must not be empty")
        return self._executor.execute(
            OP_DOCUMENT_GET_BY_KEY, self._payload(tenant_id, type=type, key=key), convert=_document
        )

    def query(self, query: DocumentQuery, tenant_id: Optional[str] = None):
        return self._executor.execute(
            OP_DOCUMENT_QUERY,
            self._payload(tenant_id, query=query.model_dump(mode="json", by_alias=True)),
            convert=_documents,
        )

    def update(self, document: Document, tenant_id: Optional[str] = None):
        if not document.id:
            raise ValidationError("Document ID is required for updates")
        return self._executor.execute(
            OP_DOCUMENT_UPDATE,
            self._payload(tenant_id, document=document.model_dump(mode="json", by_alias=True)),
        )

    def delete(self, document_id: str, tenant_id: Optional[str] = None):
        return self._executor.execute(OP_DOCUMENT_DELETE, self._payload(tenant_id, id=document_id))


class KnowledgeCollection(AgentCollection):
    def get(self, name: str, tenant_id: Optional[str] = None):
        if not name:
            raise ValidationError("Knowledge name must not be empty")
        return self._executor.execute(
            OP_KNOWLEDGE_GET, self._payload(tenant_id, name=name), convert=_knowledge
        )

    def update(self, name: str, content: str, type: Optional[str] = None, tenant_id: Optional[str] = None):
        if not name:
            raise ValidationError("Knowledge name must not be empty")
        return self._executor.execute(
            OP_KNOWLEDGE_UPDATE, self._payload(tenant_id, name=name, content=content, type=type)
        )

    def delete(self, name: str, tenant_id: Optional[str] = None):
        return self._executor.execute(OP_KNOWLEDGE_DELETE, self._payload(tenant_id, name=name))

    def list(self, tenant_id: Optional[str] = None):
        return self._executor.execute(
            OP_KNOWLEDGE_LIST, self._payload(tenant_id), convert=_knowledge_list
        )


class ConversationCollection(AgentCollection):
    def history(
        self,
        participant_id: str,
        scope: Optional[str] = None,
        *,
        page: int = 1,
        page_size: int = 10,
        workflow_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ):
        """
        One page of the messages exchanged with ``participant_id``. The
        workflow type defaults to the running workflow's, or to the agent's
        default built-in workflow outside of workflows.
        """
        if not participant_id:
            raise ValidationError("Participant ID must not be empty")
        if page < 1 or page_size < 1:
            raise ValidationError("Page and page size must be positive")
        if workflow_type is None:
            wf = context.current_workflow()
            if wf is not None:
                workflow_type = wf.info.workflow_type
            else:
                workflow_type = self._agent.default_workflow_type
        return self._executor.execute(
            OP_MESSAGE_HISTORY,
            self._payload(
                tenant_id,
                workflow_type=workflow_type,
                participant_id=participant_id,
                scope=scope,
                page=page,
                page_size=page_size,
            ),
        )

"""
Webhook ingress.

An HTTP request to ``/webhooks/{agent}/{webhook}`` is delivered as an update
to the agent's built-in workflow, where the handler registered under
``webhook`` builds a ``WebhookResponse``. That response is mapped directly
onto the HTTP response.

Query parameters ``tenant`` (required for system-scoped agents) and
``workflow`` (a named built-in workflow) select the target instance; all
other parameters are passed to the handler.
"""

import json
import logging
from typing import Any, Optional

from pydantic import BaseModel, Field
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .errors import DtsAgentsError, NotFoundError, RpcTimeoutError, ValidationError

logger = logging.getLogger(__name__)

WEBHOOK_UPDATE = "HandleWebhook"
_ROUTING_PARAMS = ("tenant", "workflow")


class WebhookRequest(BaseModel):
    name: str
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    query: dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    tenant_id: Optional[str] = None

    def body_json(self) -> Any:
        """The body decoded as JSON, or None when there is no body."""
        if not self.body:
            return None
        return json.loads(self.body)


class WebhookResponse(BaseModel):
    status_code: int = 200
    content: str = ""
    content_type: str = "application/json"
    headers: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def ok(cls, content: Any = None, content_type: str = "application/json") -> "WebhookResponse":
        return cls(status_code=200, content=_render(content, content_type), content_type=content_type)

    @classmethod
    def error(cls, status_code: int, message: str) -> "WebhookResponse":
        return cls(status_code=status_code, content=json.dumps({"error": message}))

    @classmethod
    def bad_request(cls, message: str = "Bad request") -> "WebhookResponse":
        return cls.error(400, message)

    @classmethod
    def not_found(cls, message: str = "Not found") -> "WebhookResponse":
        return cls.error(404, message)

    @classmethod
    def internal_server_error(cls, message: str = "Internal server error") -> "WebhookResponse":
        return cls.error(500, message)

    def to_response(self) -> Response:
        return Response(
            content=self.content,
            status_code=self.status_code,
            headers=self.headers,
            media_type=self.content_type,
        )


def _render(content: Any, content_type: str) -> str:
    if content is None:
        return ""
    if isinstance(content, str) and content_type != "application/json":
        return content
    if isinstance(content, BaseModel):
        return content.model_dump_json()
    return json.dumps(content)


def create_webhook_app(platform, timeout: Optional[float] = None) -> Starlette:
    """Starlette app forwarding webhook calls to ``platform``'s built-in workflows."""

    async def handle_webhook(request: Request) -> Response:
        agent_name = request.path_params["agent"]
        webhook = request.path_params["webhook"]
        tenant_id = request.query_params.get("tenant")
        workflow_name = request.query_params.get("workflow")
        body = await request.body()
        webhook_request = WebhookRequest(
            name=webhook,
            method=request.method,
            headers=dict(request.headers),
            query={k: v for k, v in request.query_params.items() if k not in _ROUTING_PARAMS},
            body=body.decode("utf-8") if body else None,
            tenant_id=tenant_id,
        )
        try:
            if workflow_name:
                definition = platform.registry.workflow(agent_name, workflow_name)
            else:
                definition = platform.registry.default_builtin(agent_name)
            result = await platform.engine.run_blocking(
                platform.rpc.update,
                definition,
                WEBHOOK_UPDATE,
                webhook_request.model_dump(mode="json"),
                tenant_id=tenant_id,
                timeout=timeout,
                start=True,
            )
        except NotFoundError as exc:
            return JSONResponse({"error": str(exc)}, status_code=404)
        except ValidationError as exc:
            return JSONResponse({"error": str(exc)}, status_code=400)
        except RpcTimeoutError as exc:
            logger.warning("Webhook %s/%s timed out: %s", agent_name, webhook, exc)
            return JSONResponse({"error": "Timed out waiting for the workflow"}, status_code=504)
        except DtsAgentsError as exc:
            logger.error("Webhook %s/%s failed: %s", agent_name, webhook, exc)
            return JSONResponse({"error": str(exc)}, status_code=500)
        return WebhookResponse.model_validate(result).to_response()

    return Starlette(
        routes=[
            Route("/webhooks/{agent}/{webhook}", handle_webhook, methods=["GET", "POST", "PUT"]),
        ]
    )

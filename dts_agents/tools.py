"""
MCP tools for human-in-the-loop tasks.

Lets an AI client review the tasks of an agent: read a task, revise its
draft and complete it with one of its actions.

Works two ways:

1. NEW SERVER - pass a name string and run it standalone::

    tools = TaskTools(platform, "Support", "support-tasks")
    tools.run(port=3000)  # Starts the MCP server (SSE) + DTS worker

2. EXISTING SERVER - pass a Server instance; its own tools keep working::

    server = Server("my-server")

    @server.list_tools()
    async def list_tools(): ...

    TaskTools(platform, "Support", server)
"""

import asyncio
import json
import logging
from typing import Any, Optional, Union

import uvicorn
from mcp.server import Server
from mcp.server.sse import SseServerTransport
from mcp.types import CallToolRequest, CallToolResult, ListToolsRequest, TextContent, Tool
from starlette.applications import Starlette
from starlette.responses import Response
from starlette.routing import Mount, Route

from .errors import DtsAgentsError

logger = logging.getLogger(__name__)

_TENANT_PROPERTY = {
    "type": "string",
    "description": "Tenant of the task (required for system-scoped agents)",
}

TASK_TOOLS = [
    Tool(
        name="get_task",
        description="Get the current state of a task: title, draft, available actions and outcome.",
        inputSchema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string", "description": "The task ID"},
                "tenant_id": _TENANT_PROPERTY,
            },
            "required": ["task_id"],
        },
    ),
    Tool(
        name="update_task_draft",
        description="Replace the draft of an open task.",
        inputSchema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string", "description": "The task ID"},
                "draft": {"type": "string", "description": "The revised draft"},
                "tenant_id": _TENANT_PROPERTY,
            },
            "required": ["task_id", "draft"],
        },
    ),
    Tool(
        name="perform_task_action",
        description="Complete an open task with one of its available actions (e.g. approve or reject).",
        inputSchema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string", "description": "The task ID"},
                "action": {"type": "string", "description": "One of the task's available actions"},
                "comment": {"type": "string", "description": "Optional comment for the action"},
                "tenant_id": _TENANT_PROPERTY,
            },
            "required": ["task_id", "action"],
        },
    ),
]


def _text(text: str, is_error: bool = False) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error)


class TaskTools:
    """
    Add task tools for one agent to an MCP server.

    Args:
        platform: The AgentPlatform hosting the agent
        agent_name: Agent whose tasks the tools act on
        server_or_name: A Server to extend, or the name of a new one
    """

    def __init__(self, platform, agent_name: str, server_or_name: Union[Server, str]):
        self._platform = platform
        self._agent = platform.agent(agent_name)

        if isinstance(server_or_name, Server):
            self._server = server_or_name
            self._owns_server = False
            self.name = server_or_name.name
        else:
            self._server = Server(server_or_name)
            self._owns_server = True
            self.name = server_or_name

        self._handlers = {
            "get_task": self._get_task,
            "update_task_draft": self._update_task_draft,
            "perform_task_action": self._perform_task_action,
        }

        # Handlers registered before ours still serve their own tools
        self._existing_list_tools = self._server.request_handlers.get(ListToolsRequest)
        self._existing_call_tool = self._server.request_handlers.get(CallToolRequest)

        self._server.list_tools()(self._list_tools)
        self._server.call_tool()(self._call_tool)

    @property
    def server(self) -> Server:
        """The MCP server the task tools are registered on."""
        return self._server

    def get_task_tools(self) -> list[Tool]:
        return list(TASK_TOOLS)

    # === Tool implementations ===

    async def _get_task(self, arguments: dict) -> CallToolResult:
        state = await self._platform.engine.run_blocking(
            self._agent.tasks.get_state, arguments["task_id"], tenant_id=arguments.get("tenant_id")
        )
        return _text(json.dumps(state.model_dump(mode="json"), indent=2))

    async def _update_task_draft(self, arguments: dict) -> CallToolResult:
        await self._platform.engine.run_blocking(
            self._agent.tasks.update_draft,
            arguments["task_id"],
            arguments["draft"],
            tenant_id=arguments.get("tenant_id"),
        )
        return _text(f"Draft of task {arguments['task_id']} updated.")

    async def _perform_task_action(self, arguments: dict) -> CallToolResult:
        await self._platform.engine.run_blocking(
            self._agent.tasks.perform_action,
            arguments["task_id"],
            arguments["action"],
            arguments.get("comment"),
            tenant_id=arguments.get("tenant_id"),
        )
        return _text(f"Task {arguments['task_id']} completed with '{arguments['action']}'.")

    # === MCP handlers ===

    async def _list_tools(self) -> list[Tool]:
        """Task tools first, then whatever the server listed before."""
        tools = self.get_task_tools()

        if self._existing_list_tools:
            existing_result = await self._existing_list_tools(ListToolsRequest(method="tools/list"))
            # ServerResult wraps the ListToolsResult
            if hasattr(existing_result, "root") and hasattr(existing_result.root, "tools"):
                tools.extend(existing_result.root.tools)
            elif hasattr(existing_result, "tools"):
                tools.extend(existing_result.tools)

        return tools

    async def _call_tool(self, name: str, arguments: Optional[dict[str, Any]]) -> CallToolResult:
        """Run a task tool, or hand any other tool to the previous handler."""
        arguments = arguments or {}
        handler = self._handlers.get(name)
        if handler is not None:
            if not str(arguments.get("task_id", "")).strip():
                return _text("Missing required parameter: task_id", is_error=True)
            try:
                return await handler(arguments)
            except DtsAgentsError as exc:
                logger.warning("Tool %s failed for task %s: %s", name, arguments.get("task_id"), exc)
                return _text(f"{type(exc).__name__}: {exc}", is_error=True)

        if self._existing_call_tool:
            existing_result = await self._existing_call_tool(
                CallToolRequest(method="tools/call", params={"name": name, "arguments": arguments})
            )
            if hasattr(existing_result, "root"):
                return existing_result.root
            return existing_result

        return _text(f"Unknown tool: {name}", is_error=True)

    # === Serving ===

    def create_app(self) -> Starlette:
        """SSE app serving this MCP server at ``/sse``."""
        sse = SseServerTransport("/messages/")

        async def handle_sse(request):
            async with sse.connect_sse(request.scope, request.receive, request._send) as streams:
                await self._server.run(
                    streams[0], streams[1], self._server.create_initialization_options()
                )
            return Response()

        return Starlette(
            routes=[
                Route("/sse", handle_sse),
                Mount("/messages/", app=sse.handle_post_message),
            ]
        )

    def run(self, host: str = "0.0.0.0", port: int = 3000):
        """
        Serve the task tools over SSE. Only for servers created by TaskTools.

        The DTS worker is started first and stopped on exit.
        """
        if not self._owns_server:
            raise RuntimeError(
                "run() is only available for standalone servers. "
                "When using an existing server, call platform.start_worker() and run your server separately."
            )
        asyncio.run(self._run_async(host, port))

    async def _run_async(self, host: str, port: int):
        self._platform.start_worker()
        logger.info(
            "MCP server '%s' - DTS: %s, MCP: http://%s:%d/sse",
            self.name, self._platform.settings.dts_host, host, port,
        )
        try:
            await uvicorn.Server(uvicorn.Config(self.create_app(), host=host, port=port, log_config=None)).serve()
        finally:
            self._platform.stop()

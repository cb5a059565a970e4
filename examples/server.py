import asyncio

import uvicorn
from mcp.server import Server
from mcp.types import TextContent, Tool

from dts_agents import AgentPlatform, TaskTools
from dts_agents.backend import Document

# Create a standard MCP server
mcp_server = Server("my-existing-server")

platform = AgentPlatform(dts_host="localhost:8080")
editor = platform.register_agent("Editor", tenant_id="contoso")


# ----- A workflow that needs a human decision -----

@editor.workflow("Publish")
def publish(wf, post: dict):
    """
    Draft a post, then wait for a reviewer to approve or reject it.
    The reviewer works through the MCP task tools.
    """
    draft = f"{post['title']}\n\n{post.get('body', '')}"
    result = yield from editor.tasks.create_and_wait(
        f"Review: {post['title']}",
        "Approve to publish, or reject with a comment.",
        draft=draft,
        task_id=post["id"],
        timeout=24 * 60 * 60,
    )
    if result.performed_action != "approve":
        return {"status": "rejected", "comment": result.comment, "timed_out": result.timed_out}
    doc = yield from editor.documents.save(
        Document(type="post", key=result.task_id, content=result.final_draft)
    )
    return {"status": "published", "document_id": doc.id}


# ----- Existing tool, kept next to the task tools -----

@mcp_server.list_tools()
async def list_tools() -> list[Tool]:
    return [
        Tool(
            name="start_post",
            description="Draft a post and open a review task for it",
            inputSchema={
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "title": {"type": "string"},
                    "body": {"type": "string"},
                },
                "required": ["id", "title"],
            },
        )
    ]


@mcp_server.call_tool()
async def call_tool(name: str, arguments: dict):
    workflow_id = await platform.engine.run_blocking(
        editor.workflows.start, "Editor:Publish", arguments, id_postfix=arguments["id"]
    )
    return [TextContent(type="text", text=f"Started {workflow_id}; review task ID: {arguments['id']}")]


# Add task tools (get_task, update_task_draft, perform_task_action)
task_tools = TaskTools(platform, "Editor", mcp_server)


# ----- Run the server -----

async def main():
    # Start the DTS worker (background thread)
    platform.start_worker()

    print("Starting existing server with task tools...")
    print("Dashboard: http://localhost:8082")
    print("MCP: http://localhost:3000/sse")
    await uvicorn.Server(uvicorn.Config(task_tools.create_app(), host="0.0.0.0", port=3000)).serve()


if __name__ == "__main__":
    asyncio.run(main())

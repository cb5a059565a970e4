"""
MCP client for the review tasks exposed by examples/server.py

Starts a post through the server's own "start_post" tool, then reviews the
task it opens with the task tools:
- get_task
- update_task_draft
- perform_task_action

Usage:
    python client.py                       # Start a post and review it interactively
    python client.py --approve <task_id>   # Approve a task that is already waiting
    python client.py --reject <task_id>    # Reject it instead

Durability demo:
    1. Start a post and answer "skip" when asked to review
    2. Restart the server
    3. Run: python client.py --approve <task_id>
    4. The Publish workflow resumes and stores the post
"""

import asyncio
import json
import sys
import uuid

from mcp.client.session import ClientSession
from mcp.client.sse import sse_client

MCP_URL = "http://localhost:3000/sse"


async def main():
    if len(sys.argv) >= 3 and sys.argv[1] in ("--approve", "--reject"):
        await send_decision(sys.argv[2], sys.argv[1][2:])
        return

    print(f"Connecting to {MCP_URL}...")

    async with sse_client(MCP_URL) as (read, write):
        async with ClientSession(read, write) as session:
            await session.initialize()
            print("✅ Connected\n")

            tools = await session.list_tools()
            print(f"Tools: {[t.name for t in tools.tools]}\n")

            await run_review(session)


def _text(result) -> str:
    return result.content[0].text if result.content else ""


async def get_task(session: ClientSession, task_id: str):
    result = await session.call_tool("get_task", {"task_id": task_id})
    if result.isError:
        return None
    return json.loads(_text(result))


async def wait_for_task(session: ClientSession, task_id: str, attempts: int = 20):
    """The task is created by the workflow, so it may take a moment to appear."""
    for _ in range(attempts):
        task = await get_task(session, task_id)
        if task is not None:
            return task
        await asyncio.sleep(0.5)
    return None


async def run_review(session: ClientSession):
    post_id = uuid.uuid4().hex[:8]
    print("📤 Starting post...")
    result = await session.call_tool(
        "start_post",
        {"id": post_id, "title": "Durable agents", "body": "Workflows that survive restarts."},
    )
    print(f"   {_text(result)}\n")

    task = await wait_for_task(session, post_id)
    if task is None:
        print(f"❌ Task {post_id} did not show up")
        return

    print(f"📋 {task['title']}")
    print(f"   {task['description']}")
    print(f"   Draft:\n{task['draft']}\n")

    edit = input("   New draft (leave empty to keep): ").strip()
    if edit:
        result = await session.call_tool("update_task_draft", {"task_id": post_id, "draft": edit})
        print(f"   {_text(result)}")

    response = input(f"   Action {task['available_actions']} or skip: ").strip().lower()
    if response == "skip":
        print("   Skipping review - task will remain waiting")
        print(f"   To approve later: python client.py --approve {post_id}")
        return

    await perform(session, post_id, response)


async def perform(session: ClientSession, task_id: str, action: str):
    print(f"   Sending {action}...")
    result = await session.call_tool(
        "perform_task_action",
        {"task_id": task_id, "action": action, "comment": f"{action} via CLI"},
    )
    if result.isError:
        print(f"\n❌ {_text(result)}")
        return

    task = await get_task(session, task_id)
    print(f"\n✅ Task completed: {task['performed_action'] if task else action}")


async def send_decision(task_id: str, action: str):
    """Approve or reject a waiting task (for resuming after server restart)."""
    print(f"Connecting to {MCP_URL}...")

    async with sse_client(MCP_URL) as (read, write):
        async with ClientSession(read, write) as session:
            await session.initialize()
            print("✅ Connected\n")

            print(f"📋 Checking task {task_id}...")
            task = await get_task(session, task_id)
            if task is None:
                print("⚠️  Task not found")
                return
            print(f"   Draft: {task['draft']}")

            if task["is_completed"]:
                print(f"⚠️  Task is already done ({task['performed_action']})")
                return

            await perform(session, task_id, action)


if __name__ == "__main__":
    asyncio.run(main())

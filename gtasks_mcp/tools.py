import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from mcp.server.fastmcp import FastMCP

from .errors import GatewayError, Unauthorized

logger = logging.getLogger(__name__)

Invoker = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any]]]

TASK_INDEX_URI = "gtasks://tasks"
TASK_URI_TEMPLATE = "gtasks:///{task_id}"


def task_uri(task_id: str) -> str:
    return TASK_URI_TEMPLATE.format(task_id=task_id)


def format_task(task: dict[str, Any]) -> str:
    return "\n".join(
        [
            f"Title: {task.get('title') or 'No title'}",
            f"Status: {task.get('status') or 'Unknown'}",
            f"Due: {task.get('due') or 'Not set'}",
            f"Notes: {task.get('notes') or 'No notes'}",
        ]
    )


def _error_payload(e: Exception) -> str:
    if isinstance(e, Unauthorized):
        return json.dumps({"error": e.description, "reauthenticate": True})
    if isinstance(e, GatewayError):
        return json.dumps({"error": e.description, "error_code": e.error_code})
    return json.dumps({"error": str(e)})


def register_task_tools(app: FastMCP, invoke: Invoker) -> FastMCP:
    """
    Register the task tools and task resources on a FastMCP app.

    ``invoke(operation, args)`` performs the operation; the gateway runs it
    against the connection's credential, the stdio proxy forwards it over HTTP.
    Tools and resources never raise: failures come back as ``{"error": ...}`` JSON.

    Resources: ``gtasks://tasks`` indexes the default list and
    ``gtasks:///<task id>`` reads one task as plain text.
    """

    async def call(operation: str, args: dict[str, Any]) -> str:
        try:
            result = await invoke(operation, args)
            return json.dumps(result)
        except GatewayError as e:
            logger.error(f"{operation} failed: {e.error_code} - {e.description}")
            return _error_payload(e)
        except Exception as e:
            logger.error(f"Exception in {operation}: {e}", exc_info=True)
            return _error_payload(e)

    @app.tool()
    async def list_tasks(cursor: str | None = None, task_list_id: str | None = None) -> str:
        """
        List tasks from a Google Tasks list, including completed ones.

        Args:
            cursor: Page cursor returned as "next_cursor" by a previous call (optional)
            task_list_id: Task list to read; defaults to the user's default list

        Returns:
            JSON object with "tasks" array and "next_cursor" (null on the last page)
        """
        logger.info(f"=== list_tasks called: cursor={cursor}, task_list_id={task_list_id} ===")
        return await call("list", {"cursor": cursor, "task_list_id": task_list_id})

    @app.tool()
    async def search_tasks(query: str) -> str:
        """
        Search tasks in every task list by title or notes (case-insensitive).

        Args:
            query: Text to look for

        Returns:
            JSON object with "tasks" array and "count" field; each task carries "task_list_id"
        """
        logger.info(f"=== search_tasks called: query='{query}' ===")
        return await call("search", {"query": query})

    @app.tool()
    async def create_task(
        title: str,
        notes: str | None = None,
        due: str | None = None,
        task_list_id: str | None = None,
    ) -> str:
        """
        Create a new task.

        Args:
            title: Task title (required)
            notes: Task details (optional)
            due: Due date as RFC 3339 timestamp, e.g. "2025-12-20T00:00:00Z" (optional)
            task_list_id: Task list to add to; defaults to the user's default list

        Returns:
            JSON object with the created "task"
        """
        logger.info(f"=== create_task called: title='{title}', task_list_id={task_list_id} ===")
        return await call(
            "create", {"title": title, "notes": notes, "due": due, "task_list_id": task_list_id}
        )

    @app.tool()
    async def update_task(
        id: str,
        task_list_id: str | None = None,
        title: str | None = None,
        notes: str | None = None,
        status: str | None = None,
        due: str | None = None,
    ) -> str:
        """
        Update an existing task. Only provided fields are changed.

        Args:
            id: Task ID (required)
            task_list_id: Task list holding the task; defaults to the user's default list
            title: New title (optional)
            notes: New notes (optional)
            status: "needsAction" or "completed" (optional)
            due: New due date as RFC 3339 timestamp (optional)

        Returns:
            JSON object with the updated "task"
        """
        logger.info(f"=== update_task called: id={id}, status={status} ===")
        return await call(
            "update",
            {
                "id": id,
                "task_list_id": task_list_id,
                "title": title,
                "notes": notes,
                "status": status,
                "due": due,
            },
        )

    @app.tool()
    async def delete_task(id: str, task_list_id: str | None = None) -> str:
        """
        Delete a task.

        Args:
            id: Task ID (required)
            task_list_id: Task list holding the task; defaults to the user's default list
        """
        logger.info(f"=== delete_task called: id={id}, task_list_id={task_list_id} ===")
        return await call("delete", {"id": id, "task_list_id": task_list_id})

    @app.tool()
    async def clear_completed_tasks(task_list_id: str | None = None) -> str:
        """
        Remove all completed tasks from a task list.

        Args:
            task_list_id: Task list to clear; defaults to the user's default list
        """
        logger.info(f"=== clear_completed_tasks called: task_list_id={task_list_id} ===")
        return await call("clear", {"task_list_id": task_list_id})

    @app.resource(TASK_INDEX_URI, name="tasks", mime_type="application/json")
    async def task_index() -> str:
        """Tasks of the default list, each addressed as a gtasks:///<task id> resource."""
        logger.info("=== task index resource read ===")
        try:
            result = await invoke("list", {})
        except Exception as e:
            logger.error(f"Exception reading task index: {e}")
            return _error_payload(e)
        resources = [
            {"uri": task_uri(task["id"]), "name": task.get("title") or "Untitled"}
            for task in result.get("tasks", [])
            if task.get("id")
        ]
        return json.dumps({"resources": resources, "next_cursor": result.get("next_cursor")})

    @app.resource(TASK_URI_TEMPLATE, name="task", mime_type="text/plain")
    async def task_resource(task_id: str) -> str:
        """A single task of the default list as plain text."""
        logger.info(f"=== task resource read: {task_id} ===")
        try:
            result = await invoke("get", {"id": task_id})
        except Exception as e:
            logger.error(f"Exception reading task {task_id}: {e}")
            return _error_payload(e)
        return format_task(result.get("task") or {})

    return app

"""Tests for the MCP tool surface."""

import json
from typing import Any
from unittest.mock import AsyncMock

import pytest
from mcp.server.fastmcp import FastMCP

from gtasks_mcp.errors import InvalidRequest, Unauthorized
from gtasks_mcp.tools import TASK_INDEX_URI, TASK_URI_TEMPLATE, register_task_tools, task_uri


def _tool(app: FastMCP, name: str) -> Any:
    return app._tool_manager.get_tool(name).fn


@pytest.fixture
def invoke() -> AsyncMock:
    return AsyncMock(return_value={"tasks": [], "next_cursor": None})


@pytest.fixture
def app(invoke: AsyncMock) -> FastMCP:
    return register_task_tools(FastMCP("test"), invoke)


class TestRegisterTaskTools:
    """Tests for register_task_tools."""

    @pytest.mark.asyncio
    async def test_registers_all_task_tools(self, app: FastMCP) -> None:
        names = {tool.name for tool in await app.list_tools()}

        assert names == {
            "list_tasks",
            "search_tasks",
            "create_task",
            "update_task",
            "delete_task",
            "clear_completed_tasks",
        }

    @pytest.mark.asyncio
    async def test_list_tasks_returns_json(self, app: FastMCP, invoke: AsyncMock) -> None:
        result = await _tool(app, "list_tasks")(cursor="c1")

        assert json.loads(result) == {"tasks": [], "next_cursor": None}
        invoke.assert_awaited_once_with("list", {"cursor": "c1", "task_list_id": None})

    @pytest.mark.asyncio
    async def test_update_maps_arguments(self, app: FastMCP, invoke: AsyncMock) -> None:
        await _tool(app, "update_task")(id="t1", status="completed")

        invoke.assert_awaited_once_with(
            "update",
            {"id": "t1", "task_list_id": None, "title": None, "notes": None, "status": "completed", "due": None},
        )

    @pytest.mark.asyncio
    async def test_clear_maps_to_clear_operation(self, app: FastMCP, invoke: AsyncMock) -> None:
        await _tool(app, "clear_completed_tasks")(task_list_id="work")

        invoke.assert_awaited_once_with("clear", {"task_list_id": "work"})

    @pytest.mark.asyncio
    async def test_unauthorized_asks_for_reauthentication(self, app: FastMCP, invoke: AsyncMock) -> None:
        invoke.side_effect = Unauthorized("Upstream authorization was rejected")

        result = json.loads(await _tool(app, "search_tasks")(query="milk"))

        assert result == {"error": "Upstream authorization was rejected", "reauthenticate": True}

    @pytest.mark.asyncio
    async def test_gateway_error_is_reported(self, app: FastMCP, invoke: AsyncMock) -> None:
        invoke.side_effect = InvalidRequest("'title' is required")

        result = json.loads(await _tool(app, "create_task")(title=""))

        assert result == {"error": "'title' is required", "error_code": "invalid_request"}

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported(self, app: FastMCP, invoke: AsyncMock) -> None:
        invoke.side_effect = RuntimeError("boom")

        result = json.loads(await _tool(app, "delete_task")(id="t1"))

        assert result == {"error": "boom"}


class TestTaskResources:
    """Tests for the gtasks resources registered next to the tools."""

    @pytest.mark.asyncio
    async def test_registers_index_and_task_template(self, app: FastMCP) -> None:
        resources = await app.list_resources()
        templates = await app.list_resource_templates()

        assert [str(resource.uri) for resource in resources] == [TASK_INDEX_URI]
        assert [template.uriTemplate for template in templates] == [TASK_URI_TEMPLATE]

    @pytest.mark.asyncio
    async def test_index_lists_task_uris(self, app: FastMCP, invoke: AsyncMock) -> None:
        invoke.return_value = {
            "tasks": [{"id": "t1", "title": "Buy milk"}, {"id": "t2", "title": ""}],
            "next_cursor": "c2",
        }

        contents = list(await app.read_resource(TASK_INDEX_URI))

        assert json.loads(contents[0].content) == {
            "resources": [
                {"uri": "gtasks:///t1", "name": "Buy milk"},
                {"uri": "gtasks:///t2", "name": "Untitled"},
            ],
            "next_cursor": "c2",
        }
        invoke.assert_awaited_once_with("list", {})

    @pytest.mark.asyncio
    async def test_task_resource_reads_through_get(self, app: FastMCP, invoke: AsyncMock) -> None:
        invoke.return_value = {"task": {"id": "t1", "title": "Buy milk", "status": "needsAction"}}

        contents = list(await app.read_resource(task_uri("t1")))

        assert contents[0].content == "Title: Buy milk\nStatus: needsAction\nDue: Not set\nNotes: No notes"
        assert contents[0].mime_type == "text/plain"
        invoke.assert_awaited_once_with("get", {"id": "t1"})

    @pytest.mark.asyncio
    async def test_task_resource_reports_unauthorized(self, app: FastMCP, invoke: AsyncMock) -> None:
        invoke.side_effect = Unauthorized("No credential bound to this connection")

        contents = list(await app.read_resource(task_uri("t1")))

        assert json.loads(contents[0].content) == {
            "error": "No credential bound to this connection",
            "reauthenticate": True,
        }

"""Tests for MCP server tools using FastMCP in-memory testing."""

import json
from collections.abc import AsyncGenerator

import pytest
from conftest import make_runtime_factory
from fastmcp import Client

from mcp_server_deep_research.exceptions import LLMProviderError
from mcp_server_deep_research.observability import TaskStatus, TaskStore
from mcp_server_deep_research.server import serve

pytestmark = pytest.mark.anyio


@pytest.fixture
def task_store(tmp_path):
    return TaskStore(db_path=tmp_path / "tasks.db")


@pytest.fixture
async def client(app_settings, task_store) -> AsyncGenerator[Client, None]:
    """In-memory FastMCP client backed by fake research collaborators."""
    app = serve(app_settings, task_store=task_store, runtime_factory=make_runtime_factory())
    async with Client(app) as client:
        yield client


def result_text(result) -> str:
    return result.content[0].text


class TestListTools:
    """Test that all expected tools are registered."""

    async def test_list_tools(self, client: Client):
        tools = await client.list_tools()
        tool_names = sorted(tool.name for tool in tools)
        assert tool_names == ["health_check", "run_deep_research", "task_cancel", "task_get", "task_list"]

    async def test_run_deep_research_schema(self, client: Client):
        tools = await client.list_tools()
        tool = next(t for t in tools if t.name == "run_deep_research")
        schema = str(tool.inputSchema)
        assert "query" in schema
        assert "breadth" in schema
        assert "depth" in schema


class TestRunDeepResearch:
    """Test the run_deep_research tool."""

    async def test_success(self, client: Client, task_store, tmp_path):
        result = await client.call_tool("run_deep_research", {"query": "install solar panels", "breadth": 2, "depth": 1})
        text = result_text(result)

        assert text.startswith("# Findings")
        assert "## Sources" in text
        assert f"Report: {tmp_path / 'results'}" in text
        assert "Action plan: " in text

        tasks = await task_store.get_task_history()
        assert len(tasks) == 1
        task = tasks[0]
        assert task.status == TaskStatus.COMPLETED
        assert task.tool_name == "run_deep_research"
        assert task.trace_id is not None

    async def test_invalid_options(self, client: Client, task_store):
        result = await client.call_tool("run_deep_research", {"query": "topic", "breadth": -1})
        assert result_text(result).startswith("Error: invalid research options")
        assert (await task_store.get_task_history())[0].status == TaskStatus.FAILED

    async def test_llm_provider_error(self, app_settings, task_store):
        factory = make_runtime_factory(error=LLMProviderError("API key required for provider 'openai'"))
        app = serve(app_settings, task_store=task_store, runtime_factory=factory)
        async with Client(app) as client:
            result = await client.call_tool("run_deep_research", {"query": "topic"})

        assert result_text(result) == "Error: API key required for provider 'openai'"
        task = (await task_store.get_task_history())[0]
        assert task.status == TaskStatus.FAILED
        assert "API key" in task.error


class TestObservabilityTools:
    """Test health_check, task_list, task_get and task_cancel."""

    async def test_health_check(self, client: Client):
        health = json.loads(result_text(await client.call_tool("health_check", {})))
        assert health["status"] == "healthy"
        assert health["running_tasks"] == 0
        assert health["jobs"] == {"total": 0, "running": 0}
        assert "memory_mb" in health

    async def test_task_list_and_get(self, client: Client):
        await client.call_tool("run_deep_research", {"query": "install solar panels", "breadth": 2, "depth": 1})

        listing = json.loads(result_text(await client.call_tool("task_list", {"status_filter": "completed"})))
        assert listing["count"] == 1
        short_id = listing["tasks"][0]["task_id"]

        details = json.loads(result_text(await client.call_tool("task_get", {"task_id": short_id})))
        assert details["status"] == "completed"
        assert details["input"]["query"] == "install solar panels"
        trace = details["trace"]
        assert trace["status"] == "completed"
        assert trace["generations"] == 2
        assert trace["spans"] == 3
        assert trace["total_tokens"] > 0

    async def test_task_list_invalid_status(self, client: Client):
        text = result_text(await client.call_tool("task_list", {"status_filter": "bogus"}))
        assert text.startswith("Error: Invalid status 'bogus'")

    async def test_task_get_missing(self, client: Client):
        text = result_text(await client.call_tool("task_get", {"task_id": "nope"}))
        assert text == "Error: Task 'nope' not found"

    async def test_task_cancel_not_running(self, client: Client):
        payload = json.loads(result_text(await client.call_tool("task_cancel", {"task_id": "nope"})))
        assert payload["success"] is False

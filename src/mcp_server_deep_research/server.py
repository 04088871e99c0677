"""MCP server exposing deep research as tools plus a REST/SSE job API."""

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager


def _configure_stdio_logging() -> None:
    """Configure logging for stdio MCP mode - all logs MUST go to stderr.

    In stdio mode, stdout is reserved exclusively for JSON-RPC messages.
    Any logging or print() to stdout corrupts the protocol stream.
    """
    os.environ.setdefault("BROWSER_USE_LOGGING_LEVEL", "warning")

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    root = logging.getLogger()
    root.handlers = [stderr_handler]
    root.setLevel(logging.WARNING)

    for logger_name in [
        "httpx",
        "httpcore",
        "asyncio",
        "browser_use",
        "openai",
        "anthropic",
        "aiosqlite",
    ]:
        dep_logger = logging.getLogger(logger_name)
        dep_logger.setLevel(logging.WARNING)
        dep_logger.handlers = [stderr_handler]
        dep_logger.propagate = False


# Configure logging BEFORE importing browser_use and other noisy dependencies
_configure_stdio_logging()

# ruff: noqa: E402 - Intentional late imports after logging configuration
from fastmcp import FastMCP
from fastmcp.dependencies import CurrentContext, Progress
from fastmcp.server.context import Context
from fastmcp.server.tasks.config import TaskConfig
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, Response, StreamingResponse

from .config import AppSettings, settings
from .exceptions import LLMProviderError
from .observability import (
    NullTracer,
    StoreTracer,
    TaskRecord,
    TaskStage,
    TaskStatus,
    TaskStore,
    Tracer,
    bind_task_context,
    bind_trace_id,
    clear_task_context,
    get_task_logger,
    get_task_store,
    setup_structured_logging,
)
from .research import JobManager, ProgressRelay, ResearchOptions, ResearchProgress, ResearchRuntime, ResearchStage, research_runtime, run_research
from .research.progress import ProgressSink

logger = logging.getLogger("mcp_server_deep_research")
logger.setLevel(getattr(logging, settings.server.logging_level.upper(), logging.INFO))

RuntimeFactory = Callable[[AppSettings, Tracer], AbstractAsyncContextManager[ResearchRuntime]]

# Global registry of running asyncio tasks for cancellation support
_running_tasks: dict[str, asyncio.Task] = {}

_STAGE_MAP = {
    ResearchStage.NOT_STARTED: TaskStage.INITIALIZING,
    ResearchStage.PLANNING: TaskStage.PLANNING,
    ResearchStage.FANNING_OUT: TaskStage.SEARCHING,
    ResearchStage.FETCHING: TaskStage.SEARCHING,
    ResearchStage.EXTRACTING: TaskStage.EXTRACTING,
    ResearchStage.RECURSING: TaskStage.RECURSING,
    ResearchStage.TERMINAL: TaskStage.EXTRACTING,
    ResearchStage.MERGING: TaskStage.MERGING,
    ResearchStage.DONE: TaskStage.REPORTING,
}


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _duration(task: TaskRecord) -> float | None:
    seconds = task.duration_seconds
    return round(seconds, 1) if seconds else None


def _task_row(task: TaskRecord) -> dict:
    """Compact one-line view of a task for health_check and task_list."""
    return {
        "task_id": task.task_id[:8],
        "tool": task.tool_name,
        "status": task.status.value,
        "stage": task.stage.value if task.stage else None,
        "progress": f"{task.progress_current}/{task.progress_total}",
        "message": task.progress_message,
        "created": task.created_at.isoformat(),
        "duration_sec": _duration(task),
    }


async def _trace_summary(store: TaskStore, trace_id: str | None) -> dict | None:
    """Token and span totals of a research run's trace."""
    trace = await store.get_trace(trace_id) if trace_id else None
    if trace is None:
        return None
    kinds = [span.kind for span in await store.get_spans(trace.trace_id)]
    return {
        "trace_id": trace.trace_id,
        "status": trace.status,
        "total_tokens": trace.total_tokens,
        "spans": kinds.count("span"),
        "generations": kinds.count("generation"),
    }


def serve(
    app_settings: AppSettings | None = None,
    task_store: TaskStore | None = None,
    runtime_factory: RuntimeFactory = research_runtime,
) -> FastMCP:
    """Create and configure the MCP server with background task support."""
    app_settings = app_settings or settings
    setup_structured_logging(app_settings.server.logging_level)

    server = FastMCP("mcp_server_deep_research")
    store = task_store or get_task_store(app_settings.get_db_path())

    def _make_tracer() -> Tracer:
        return StoreTracer(store) if app_settings.telemetry.enabled else NullTracer()

    # --- Research Tool ---

    @server.tool(task=TaskConfig(mode="optional"))
    async def run_deep_research(
        query: str,
        breadth: int | None = None,
        depth: int | None = None,
        output_dir: str | None = None,
        answer: bool = False,
        ctx: Context = CurrentContext(),
        progress: Progress = Progress(),
    ) -> str:
        """
        Run recursive deep research on a query and write a report.

        The query is expanded into `breadth` search queries; each result's
        follow-up questions are researched again, `depth` levels deep, with
        breadth halving per level. Runs as a background task if the client
        requests it. Progress is streamed via the MCP task protocol.

        Args:
            query: The research question or task
            breadth: Search queries per level (default from settings)
            depth: Recursion depth (default from settings)
            output_dir: Directory for the report, action plan and log
            answer: Also write a concise final answer, returned above the report

        Returns:
            The final report as markdown, followed by the saved file paths
        """
        task_id = str(uuid.uuid4())
        await store.create_task(
            TaskRecord(
                task_id=task_id,
                tool_name="run_deep_research",
                status=TaskStatus.PENDING,
                input_params={"query": query, "breadth": breadth, "depth": depth, "output_dir": output_dir, "answer": answer},
            )
        )
        bind_task_context(task_id, "run_deep_research")
        task_logger = get_task_logger()
        task_logger.info("task_created", query=query[:100])

        try:
            options = ResearchOptions(query=query, breadth=breadth, depth=depth, output_dir=output_dir, answer=answer)
        except ValidationError as e:
            await store.update_status(task_id, TaskStatus.FAILED, error=str(e))
            clear_task_context()
            return f"Error: invalid research options: {e}"

        await ctx.info(f"Researching: {query}")
        await store.update_status(task_id, TaskStatus.RUNNING)
        await store.update_progress(task_id, 0, 0, "Initializing...", TaskStage.INITIALIZING)
        task_logger.info("task_running")

        completed = 0

        async def forward_progress(snapshot: ResearchProgress) -> None:
            nonlocal completed
            message = (snapshot.research_goal or query)[:100]
            await progress.set_total(max(snapshot.total_queries, 1))
            if snapshot.completed_queries > completed:
                await progress.increment(snapshot.completed_queries - completed)
                completed = snapshot.completed_queries
            await progress.set_message(message)
            await store.update_progress(
                task_id, snapshot.completed_queries, snapshot.total_queries, message, _STAGE_MAP[snapshot.stage]
            )

        async def research() -> str:
            async with runtime_factory(app_settings, _make_tracer()) as runtime:
                async with ProgressRelay(forward_progress) as relay:
                    outcome = await run_research(options, runtime, on_progress=relay)
            if outcome.trace_id:
                bind_trace_id(outcome.trace_id)
                await store.set_trace_id(task_id, outcome.trace_id)
            files = [f"Report: {outcome.report_path}", f"Log: {outcome.log_path}"]
            if outcome.action_plan_path:
                files.append(f"Action plan: {outcome.action_plan_path}")
            body = f"{outcome.report}\n\n---\n" + "\n".join(files)
            return f"Answer: {outcome.answer}\n\n{body}" if outcome.answer else body

        try:
            research_task = asyncio.create_task(research())
            _running_tasks[task_id] = research_task
            try:
                report = await research_task
            finally:
                _running_tasks.pop(task_id, None)

            await store.update_progress(task_id, 1, 1, "Completed", TaskStage.FINALIZING)
            await store.update_status(task_id, TaskStatus.COMPLETED, result=report)
            await ctx.info("Research completed")
            task_logger.info("task_completed", result_length=len(report))
            return report

        except LLMProviderError as e:
            logger.error(f"LLM initialization failed: {e}")
            await store.update_status(task_id, TaskStatus.FAILED, error=str(e))
            task_logger.error("task_failed", error=str(e))
            return f"Error: {e}"

        except asyncio.CancelledError:
            await store.update_status(task_id, TaskStatus.CANCELLED, error="Cancelled by user")
            task_logger.info("task_cancelled")
            raise

        except Exception as e:
            await store.update_status(task_id, TaskStatus.FAILED, error=str(e))
            task_logger.error("task_failed", error=str(e))
            raise

        finally:
            clear_task_context()

    # --- Observability Tools ---

    async def _health() -> dict:
        import psutil

        running = await store.get_running_tasks()
        rss = psutil.Process().memory_info().rss
        return {
            "status": "healthy",
            "uptime_seconds": round(time.time() - _server_start_time, 1),
            "memory_mb": round(rss / 1024 / 1024, 1),
            "running_tasks": len(running),
            "tasks": [_task_row(t) for t in running],
            "jobs": {
                "total": len(job_manager.jobs),
                "running": sum(1 for job in job_manager.jobs.values() if job.status == TaskStatus.RUNNING),
            },
            "stats": await store.get_stats(),
        }

    @server.tool()
    async def health_check() -> str:
        """
        Health check with process stats, running research tasks and API job counts.

        Returns:
            JSON object with server health status, running tasks, and statistics
        """
        return json.dumps(await _health(), indent=2)

    @server.tool()
    async def task_list(
        limit: int = 20,
        status_filter: str | None = None,
    ) -> str:
        """
        List recent research tasks with optional filtering.

        Args:
            limit: Maximum number of tasks to return (default 20)
            status_filter: Optional status filter (pending, running, completed, failed, cancelled)

        Returns:
            JSON list of recent tasks
        """
        try:
            status = TaskStatus(status_filter) if status_filter else None
        except ValueError:
            valid = ", ".join(s.value for s in TaskStatus)
            return f"Error: Invalid status '{status_filter}'. Use: {valid}"

        tasks = await store.get_task_history(limit=limit, status=status)
        return json.dumps({"tasks": [_task_row(t) for t in tasks], "count": len(tasks)}, indent=2)

    @server.tool()
    async def task_get(task_id: str) -> str:
        """
        Get full details of a research task, including its token usage.

        Args:
            task_id: Task ID (full or prefix)

        Returns:
            JSON object with task details, input, result/error and trace summary
        """
        task = await store.get_task(task_id)
        if task is None:
            recent = await store.get_task_history(limit=100)
            task = next((t for t in recent if t.task_id.startswith(task_id)), None)
        if task is None:
            return f"Error: Task '{task_id}' not found"

        details = {
            "task_id": task.task_id,
            "tool": task.tool_name,
            "status": task.status.value,
            "stage": task.stage.value if task.stage else None,
            "progress": {
                "current": task.progress_current,
                "total": task.progress_total,
                "message": task.progress_message,
                "percent": task.progress_percent,
            },
            "timestamps": {
                "created": _iso(task.created_at),
                "started": _iso(task.started_at),
                "completed": _iso(task.completed_at),
                "duration_sec": _duration(task),
            },
            "input": task.input_params,
            "result": task.result[:500] if task.result else None,
            "error": task.error,
            "trace": await _trace_summary(store, task.trace_id),
        }
        return json.dumps(details, indent=2)

    @server.tool()
    async def task_cancel(task_id: str) -> str:
        """
        Cancel a running research task.

        Args:
            task_id: Task ID (full or prefix match)

        Returns:
            JSON with success status and message
        """
        matched_id = next((full_id for full_id in _running_tasks if full_id.startswith(task_id)), None)
        if not matched_id:
            return json.dumps({"success": False, "error": f"Task '{task_id}' not found or not running"})

        _running_tasks[matched_id].cancel()
        await store.update_status(matched_id, TaskStatus.CANCELLED, error="Cancelled by user")
        return json.dumps({"success": True, "task_id": matched_id[:8], "message": "Task cancelled"})

    # --- REST job API ---

    async def run_job(
        job_id: str,
        options: ResearchOptions,
        on_progress: ProgressSink,
        on_log: Callable[[str], None],
    ):
        if not options.output_dir:
            options = options.model_copy(update={"output_dir": str(app_settings.get_results_dir() / job_id)})
        async with runtime_factory(app_settings, _make_tracer()) as runtime:
            return await run_research(options, runtime, on_progress=on_progress, on_log=on_log)

    job_manager = JobManager(
        run_job,
        retention_hours=app_settings.research.file_retention_hours,
        job_timeout=app_settings.research.job_timeout,
    )

    @server.custom_route("/api/health", methods=["GET"])
    async def api_health(request: Request) -> Response:
        return JSONResponse(await _health())

    @server.custom_route("/api/research", methods=["POST"])
    async def api_start_research(request: Request) -> Response:
        try:
            body = await request.json()
        except ValueError:
            return _error("Request body must be JSON", 400)
        if not isinstance(body, dict) or not body.get("query"):
            return _error("Query parameter is required", 400)

        try:
            options = ResearchOptions(
                query=body["query"],
                breadth=body.get("breadth"),
                depth=body.get("depth"),
                output_dir=body.get("outputDir") or body.get("output_dir"),
                log_file_name=body.get("logFileName") or body.get("log_file_name"),
                report_file_name=body.get("reportFileName") or body.get("report_file_name"),
                action_plan_file_name=body.get("actionPlanFileName") or body.get("action_plan_file_name"),
                answer=bool(body.get("answer", False)),
            )
        except ValidationError as e:
            return _error(f"Invalid research options: {e.errors(include_url=False)}", 400)

        job_manager.cleanup()
        job = job_manager.start(options)
        return JSONResponse({"jobId": job.job_id, "message": "Research job started", "status": job.status.value}, status_code=202)

    @server.custom_route("/api/research/{job_id}", methods=["GET"])
    async def api_get_job(request: Request) -> Response:
        job = job_manager.get(request.path_params["job_id"])
        if job is None:
            return _error("Job not found", 404)
        return JSONResponse(job.to_dict())

    @server.custom_route("/api/research/{job_id}/stream", methods=["GET"])
    async def api_stream_job(request: Request) -> Response:
        job = job_manager.get(request.path_params["job_id"])
        if job is None:
            return _error("Job not found", 404)

        queue = job_manager.subscribe(job)

        async def events() -> AsyncIterator[str]:
            try:
                while True:
                    event = await queue.get()
                    if event is None:
                        return
                    yield f"data: {json.dumps(event, default=str)}\n\n"
            finally:
                job_manager.unsubscribe(job, queue)

        return StreamingResponse(
            events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    def _download(request: Request, attribute: str, label: str, require_completed: bool) -> Response:
        job = job_manager.get(request.path_params["job_id"])
        if job is None:
            return _error("Job not found", 404)
        if require_completed and job.status != TaskStatus.COMPLETED:
            return _error("Research is not completed yet", 400)
        path = getattr(job.result, attribute, None) if job.result else None
        if not path or not os.path.exists(path):
            return _error(f"{label} file not found", 404)
        return FileResponse(path, filename=os.path.basename(path))

    @server.custom_route("/api/research/{job_id}/report", methods=["GET"])
    async def api_download_report(request: Request) -> Response:
        return _download(request, "report_path", "Report", require_completed=True)

    @server.custom_route("/api/research/{job_id}/log", methods=["GET"])
    async def api_download_log(request: Request) -> Response:
        return _download(request, "log_path", "Log", require_completed=False)

    @server.custom_route("/api/research/{job_id}/action-plan", methods=["GET"])
    async def api_download_action_plan(request: Request) -> Response:
        return _download(request, "action_plan_path", "Action plan", require_completed=True)

    return server


# Track server start time for uptime calculation
_server_start_time = time.time()


server_instance = serve()


def main() -> None:
    """Entry point for MCP server."""
    transport = settings.server.transport

    if transport == "stdio":
        logger.info(f"Starting MCP deep research server (provider: {settings.llm.provider}, transport: stdio)")
        server_instance.run(transport="stdio")
    elif transport in ("streamable-http", "sse"):
        logger.info(f"Starting MCP deep research server (provider: {settings.llm.provider}, transport: {transport})")
        logger.info(f"HTTP server at http://{settings.server.host}:{settings.server.port}/mcp")
        logger.info(f"Research API at http://{settings.server.host}:{settings.server.port}/api/research")
        server_instance.run(transport=transport, host=settings.server.host, port=settings.server.port)
    else:
        raise ValueError(f"Unknown transport: {transport}")


if __name__ == "__main__":
    main()

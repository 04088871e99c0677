"""Tests for background research jobs and their event streams."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from mcp_server_deep_research.error_analysis import ErrorCategory
from mcp_server_deep_research.observability.models import TaskStatus
from mcp_server_deep_research.research.jobs import JobManager, progress_payload
from mcp_server_deep_research.research.models import GoalQuery, ResearchOptions, ResearchOutcome, ResearchProgress

pytestmark = pytest.mark.anyio


class ScriptedRunner:
    """Logs, reports progress, then waits for ``release`` before finishing."""

    def __init__(self, error: Exception | None = None, block: bool = True):
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.error = error
        if not block:
            self.release.set()

    async def __call__(self, job_id, options, on_progress, on_log):
        on_log(f"Starting {options.query}")
        on_progress(ResearchProgress(total_queries=2, completed_queries=1))
        self.started.set()
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return ResearchOutcome(query=options.query, learnings=["fact"], report="# Report")


async def drain(queue: asyncio.Queue) -> list:
    events = []
    while True:
        event = await asyncio.wait_for(queue.get(), timeout=2)
        if event is None:
            return events
        events.append(event)


class TestJobLifecycle:
    """Tests for JobManager.start and job completion."""

    async def test_completes(self):
        manager = JobManager(ScriptedRunner(block=False))
        job = manager.start(ResearchOptions(query="topic"))
        await job.task

        assert job.status == TaskStatus.COMPLETED
        assert job.logs == ["Starting topic"]
        assert job.progress["completed_queries"] == 1
        data = job.to_dict()
        assert data["jobId"] == job.job_id
        assert data["status"] == "completed"
        assert data["result"]["learnings"] == ["fact"]
        assert "error" not in data

    async def test_failure_is_classified(self):
        manager = JobManager(ScriptedRunner(error=ConnectionError("connection refused"), block=False))
        job = manager.start(ResearchOptions(query="topic"))
        await job.task

        assert job.status == TaskStatus.FAILED
        assert job.error == "connection refused"
        assert job.error_analysis.category == ErrorCategory.CONNECTION
        assert job.to_dict()["errorCategory"] == "connection"

    async def test_job_timeout(self):
        manager = JobManager(ScriptedRunner(), job_timeout=0.05)
        job = manager.start(ResearchOptions(query="topic"))
        await job.task

        assert job.status == TaskStatus.FAILED
        assert job.error == "Research job timed out after 0.05s"
        assert job.error_analysis.category == ErrorCategory.TIMEOUT

    async def test_cancel(self):
        runner = ScriptedRunner()
        manager = JobManager(runner)
        job = manager.start(ResearchOptions(query="topic"))
        await runner.started.wait()

        assert manager.cancel(job.job_id)
        with pytest.raises(asyncio.CancelledError):
            await job.task
        assert job.status == TaskStatus.CANCELLED
        assert job.to_dict()["error"] == "Cancelled by user"
        assert not manager.cancel(job.job_id)

    async def test_cancel_unknown(self):
        assert not JobManager(ScriptedRunner()).cancel("missing")


class TestSubscriptions:
    """Event streams replay history and follow live events."""

    async def test_live_subscriber(self):
        runner = ScriptedRunner()
        manager = JobManager(runner)
        job = manager.start(ResearchOptions(query="topic"))
        await runner.started.wait()

        queue = manager.subscribe(job)
        runner.release.set()
        events = await drain(queue)

        types = [event["type"] for event in events]
        assert types[:3] == ["log", "progress", "status"]
        assert events[2]["status"] == "running"
        assert types[-2:] == ["status", "completed"]
        assert events[-1]["result"]["report"] == "# Report"
        assert job.subscribers == set()

    async def test_late_subscriber_gets_history(self):
        manager = JobManager(ScriptedRunner(block=False))
        job = manager.start(ResearchOptions(query="topic"))
        await job.task

        events = await drain(manager.subscribe(job))
        assert [event["type"] for event in events] == ["log", "progress", "status", "completed"]
        assert events[0]["message"] == "Starting topic"

    async def test_failed_job_stream_ends_with_error(self):
        manager = JobManager(ScriptedRunner(error=RuntimeError("boom"), block=False))
        job = manager.start(ResearchOptions(query="topic"))
        await job.task

        events = await drain(manager.subscribe(job))
        assert events[-1] == {"type": "error", "error": "boom"}

    async def test_unsubscribe(self):
        runner = ScriptedRunner()
        manager = JobManager(runner)
        job = manager.start(ResearchOptions(query="topic"))
        queue = manager.subscribe(job)
        manager.unsubscribe(job, queue)
        assert queue not in job.subscribers
        runner.release.set()
        await job.task


class TestRetention:
    async def test_cleanup_removes_old_jobs(self):
        manager = JobManager(ScriptedRunner(block=False), retention_hours=24)
        old = manager.start(ResearchOptions(query="old"))
        fresh = manager.start(ResearchOptions(query="fresh"))
        await asyncio.gather(old.task, fresh.task)
        old.created_at = datetime.now(UTC) - timedelta(hours=25)

        assert manager.cleanup() == 1
        assert manager.get(old.job_id) is None
        assert manager.get(fresh.job_id) is fresh

    async def test_shutdown_cancels_running(self):
        runner = ScriptedRunner()
        manager = JobManager(runner)
        job = manager.start(ResearchOptions(query="topic"))
        await runner.started.wait()
        await manager.shutdown()
        assert job.status == TaskStatus.CANCELLED


class TestProgressPayload:
    def test_goal_from_current_query(self):
        progress = ResearchProgress(current_query=GoalQuery(query="q", research_goal="find rules"))
        assert progress_payload(progress, "topic")["research_goal"] == "find rules"

    def test_goal_falls_back_to_topic(self):
        assert progress_payload(ResearchProgress(), "topic")["research_goal"] == "topic"

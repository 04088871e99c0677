"""In-memory research jobs with log history and server-sent event subscribers."""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from ..error_analysis import ErrorAnalysis, analyze_error, get_error_recommendations
from ..observability.models import TaskStatus
from .models import ResearchOptions, ResearchOutcome, ResearchProgress
from .progress import ProgressSink

logger = logging.getLogger(__name__)

JobRunner = Callable[[str, ResearchOptions, ProgressSink, Callable[[str], None]], Awaitable[ResearchOutcome]]

# Queue sentinel: the stream for this subscriber is finished
_END = None


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class ResearchJob:
    """State of one research job, as served to API clients."""

    job_id: str
    options: ResearchOptions
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    logs: list[str] = field(default_factory=list)
    progress: dict[str, Any] | None = None
    result: ResearchOutcome | None = None
    error: str | None = None
    error_analysis: ErrorAnalysis | None = None
    task: asyncio.Task | None = field(default=None, repr=False)
    subscribers: set[asyncio.Queue] = field(default_factory=set, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "jobId": self.job_id,
            "status": self.status.value,
            "progress": self.progress,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
        if self.status == TaskStatus.COMPLETED and self.result is not None:
            data["result"] = self.result.model_dump(mode="json")
        if self.status in (TaskStatus.FAILED, TaskStatus.CANCELLED) and self.error:
            data["error"] = self.error
        if self.error_analysis is not None:
            data["errorCategory"] = self.error_analysis.category.value
        return data

    def terminal_event(self) -> dict[str, Any] | None:
        if self.status == TaskStatus.COMPLETED and self.result is not None:
            return {"type": "completed", "result": self.result.model_dump(mode="json")}
        if self.status in (TaskStatus.FAILED, TaskStatus.CANCELLED):
            return {"type": "error", "error": self.error or self.status.value}
        return None


def progress_payload(progress: ResearchProgress, fallback_goal: str) -> dict[str, Any]:
    """Serialize a snapshot, always including a research goal."""
    payload = progress.model_dump(mode="json")
    payload["research_goal"] = progress.research_goal or fallback_goal
    return payload


class JobManager:
    """Runs research jobs in the background and fans their events out to subscribers.

    Events are dicts with a ``type`` of ``log``, ``progress``, ``status``,
    ``completed`` or ``error``. A new subscriber first receives the job's
    history (all log lines, the latest progress and the current status), then
    live events until the job ends.
    """

    def __init__(self, runner: JobRunner, retention_hours: float = 24, job_timeout: float | None = None):
        self.runner = runner
        self.retention = timedelta(hours=retention_hours)
        self.job_timeout = job_timeout
        self.jobs: dict[str, ResearchJob] = {}

    def get(self, job_id: str) -> ResearchJob | None:
        return self.jobs.get(job_id)

    def start(self, options: ResearchOptions) -> ResearchJob:
        """Register a job and start it on the running event loop."""
        job = ResearchJob(job_id=str(uuid.uuid4()), options=options)
        self.jobs[job.job_id] = job
        job.task = asyncio.create_task(self._run(job), name=f"research-job-{job.job_id[:8]}")
        logger.info(f"Research job {job.job_id} started: {options.query[:100]}")
        return job

    async def _run(self, job: ResearchJob) -> None:
        self._set_status(job, TaskStatus.RUNNING)

        def on_log(message: str) -> None:
            job.logs.append(message)
            job.updated_at = _now()
            self._publish(job, {"type": "log", "message": message})

        def on_progress(progress: ResearchProgress) -> None:
            job.progress = progress_payload(progress, job.options.query)
            job.updated_at = _now()
            self._publish(job, {"type": "progress", "progress": job.progress})

        try:
            call = self.runner(job.job_id, job.options, on_progress, on_log)
            if self.job_timeout:
                job.result = await asyncio.wait_for(call, timeout=self.job_timeout)
            else:
                job.result = await call
        except asyncio.CancelledError:
            job.error = "Cancelled by user"
            self._finish(job, TaskStatus.CANCELLED)
            raise
        except Exception as e:
            job.error = str(e) or type(e).__name__
            if isinstance(e, TimeoutError) and self.job_timeout:
                job.error = f"Research job timed out after {self.job_timeout}s"
            job.error_analysis = analyze_error(e, {"job_id": job.job_id, "query": job.options.query})
            logger.error(f"Research job {job.job_id} failed ({job.error_analysis.category.value}): {job.error}")
            for recommendation in get_error_recommendations(job.error_analysis):
                logger.debug(f"Recommendation for job {job.job_id}: {recommendation}")
            self._finish(job, TaskStatus.FAILED)
            return

        self._finish(job, TaskStatus.COMPLETED)
        logger.info(f"Research job {job.job_id} completed")

    def cancel(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.is_terminal or job.task is None:
            return False
        job.task.cancel()
        return True

    def subscribe(self, job: ResearchJob) -> asyncio.Queue:
        """Return a queue pre-filled with the job's history.

        The queue ends with ``None`` once the job has finished.
        """
        queue: asyncio.Queue = asyncio.Queue()
        for message in job.logs:
            queue.put_nowait({"type": "log", "message": message})
        if job.progress is not None:
            queue.put_nowait({"type": "progress", "progress": job.progress})
        queue.put_nowait({"type": "status", "status": job.status.value})

        terminal = job.terminal_event()
        if terminal is not None:
            queue.put_nowait(terminal)
            queue.put_nowait(_END)
        else:
            job.subscribers.add(queue)
        return queue

    def unsubscribe(self, job: ResearchJob, queue: asyncio.Queue) -> None:
        job.subscribers.discard(queue)

    def cleanup(self, now: datetime | None = None) -> int:
        """Drop jobs older than the retention period. Returns count removed."""
        cutoff = (now or _now()) - self.retention
        expired = [job for job in self.jobs.values() if job.created_at < cutoff]
        for job in expired:
            if job.task is not None and not job.task.done():
                job.task.cancel()
            for queue in job.subscribers:
                queue.put_nowait(_END)
            job.subscribers.clear()
            del self.jobs[job.job_id]
        if expired:
            logger.info(f"Removed {len(expired)} expired research jobs")
        return len(expired)

    async def shutdown(self) -> None:
        tasks = [job.task for job in self.jobs.values() if job.task is not None and not job.task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _set_status(self, job: ResearchJob, status: TaskStatus) -> None:
        job.status = status
        job.updated_at = _now()
        self._publish(job, {"type": "status", "status": status.value})

    def _finish(self, job: ResearchJob, status: TaskStatus) -> None:
        self._set_status(job, status)
        terminal = job.terminal_event()
        if terminal is not None:
            self._publish(job, terminal)
        for queue in job.subscribers:
            queue.put_nowait(_END)
        job.subscribers.clear()

    @staticmethod
    def _publish(job: ResearchJob, event: dict[str, Any]) -> None:
        for queue in job.subscribers:
            queue.put_nowait(event)

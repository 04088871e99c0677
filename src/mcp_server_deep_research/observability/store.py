"""SQLite-based store for research tasks, traces and spans."""

import asyncio
import json
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite

from .models import SpanRecord, TaskRecord, TaskStage, TaskStatus, TraceRecord

MAX_RESULT_CHARS = 10_000
MAX_ERROR_CHARS = 2_000

_FINISHED = (TaskStatus.COMPLETED.value, TaskStatus.FAILED.value, TaskStatus.CANCELLED.value)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS tasks (
        task_id TEXT PRIMARY KEY,
        tool_name TEXT NOT NULL,
        status TEXT NOT NULL,
        stage TEXT,
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT,
        progress_current INTEGER DEFAULT 0,
        progress_total INTEGER DEFAULT 0,
        progress_message TEXT,
        input_params TEXT NOT NULL,
        result TEXT,
        error TEXT,
        trace_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS traces (
        trace_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        completed_at TEXT,
        metadata TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS spans (
        span_id TEXT PRIMARY KEY,
        trace_id TEXT NOT NULL,
        parent_span_id TEXT,
        name TEXT NOT NULL,
        kind TEXT NOT NULL,
        started_at TEXT NOT NULL,
        ended_at TEXT,
        metadata TEXT NOT NULL,
        output TEXT,
        error TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_created ON tasks(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_tool ON tasks(tool_name)",
    "CREATE INDEX IF NOT EXISTS idx_spans_trace ON spans(trace_id)",
)


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _loads_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        loaded = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return loaded if isinstance(loaded, dict) else {}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


def _clip(text: str | None, limit: int) -> str | None:
    """Truncate stored text; empty strings are stored as NULL."""
    return text[:limit] if text else None


class TaskStore:
    """Async SQLite store for research task state and trace telemetry.

    Every research run leaves a task row (what was asked, how far it got,
    how it ended) plus one trace with its spans and LLM generations. The
    database survives restarts so `task_list` and `task_get` can report on
    past runs.
    """

    def __init__(self, db_path: Path | None = None):
        """Initialize TaskStore.

        Args:
            db_path: Path to SQLite database. Defaults to ~/.config/mcp-server-deep-research/tasks.db
        """
        if db_path is None:
            from ..config import get_config_dir

            db_path = get_config_dir() / "tasks.db"
        self.db_path = db_path
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create schema if not exists."""
        if self._initialized:
            return

        # Parallel research branches hit the store at once; DDL and PRAGMAs must run once.
        async with self._init_lock:
            if self._initialized:
                return

            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA journal_mode = WAL")
                await db.execute("PRAGMA busy_timeout = 5000")
                for statement in _SCHEMA:
                    await db.execute(statement)
                await db.commit()

            self._initialized = True

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        await self.initialize()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            yield db

    async def _write(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one statement in its own transaction and return the affected row count."""
        async with self._connect() as db:
            cursor = await db.execute(sql, params)
            await db.commit()
            return cursor.rowcount

    async def _fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]:
        async with self._connect() as db:
            async with db.execute(sql, params) as cursor:
                return list(await cursor.fetchall())

    async def _fetch_one(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Row | None:
        async with self._connect() as db:
            async with db.execute(sql, params) as cursor:
                return await cursor.fetchone()

    # --- Tasks ---

    async def create_task(self, task: TaskRecord) -> None:
        await self._write(
            """
            INSERT INTO tasks (
                task_id, tool_name, status, stage, created_at, started_at, completed_at,
                progress_current, progress_total, progress_message, input_params,
                result, error, trace_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.task_id,
                task.tool_name,
                task.status.value,
                task.stage.value if task.stage else None,
                _iso(task.created_at),
                _iso(task.started_at),
                _iso(task.completed_at),
                task.progress_current,
                task.progress_total,
                task.progress_message,
                json.dumps(task.input_params),
                task.result,
                task.error,
                task.trace_id,
            ),
        )

    async def update_progress(
        self,
        task_id: str,
        current: int,
        total: int,
        message: str | None = None,
        stage: TaskStage | None = None,
    ) -> None:
        """Record completed/total research queries for a running task."""
        await self._write(
            "UPDATE tasks SET progress_current = ?, progress_total = ?, progress_message = ?, stage = ? WHERE task_id = ?",
            (current, total, message, stage.value if stage else None, task_id),
        )

    async def set_trace_id(self, task_id: str, trace_id: str) -> None:
        """Link a task to the trace of its research run."""
        await self._write("UPDATE tasks SET trace_id = ? WHERE task_id = ?", (trace_id, task_id))

    async def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        result: str | None = None,
        error: str | None = None,
    ) -> None:
        """Move a task to `status`, stamping start/finish times the first time they apply.

        Result and error text are truncated; passing None keeps the stored value.
        """
        now = datetime.now(UTC).isoformat()
        started_at = now if status == TaskStatus.RUNNING else None
        completed_at = now if status.value in _FINISHED else None

        await self._write(
            """
            UPDATE tasks
            SET status = ?,
                started_at = COALESCE(started_at, ?),
                completed_at = COALESCE(completed_at, ?),
                result = COALESCE(?, result),
                error = COALESCE(?, error)
            WHERE task_id = ?
            """,
            (
                status.value,
                started_at,
                completed_at,
                _clip(result, MAX_RESULT_CHARS),
                _clip(error, MAX_ERROR_CHARS),
                task_id,
            ),
        )

    async def get_task(self, task_id: str) -> TaskRecord | None:
        row = await self._fetch_one("SELECT * FROM tasks WHERE task_id = ?", (task_id,))
        return self._row_to_task(row) if row else None

    async def get_running_tasks(self) -> list[TaskRecord]:
        rows = await self._fetch_all(
            "SELECT * FROM tasks WHERE status = ? ORDER BY created_at DESC",
            (TaskStatus.RUNNING.value,),
        )
        return [self._row_to_task(row) for row in rows]

    async def get_task_history(
        self,
        limit: int = 100,
        tool_name: str | None = None,
        status: TaskStatus | None = None,
    ) -> list[TaskRecord]:
        """Most recent tasks first, optionally filtered by tool and status."""
        filters: dict[str, Any] = {}
        if tool_name:
            filters["tool_name"] = tool_name
        if status:
            filters["status"] = status.value

        sql = "SELECT * FROM tasks"
        if filters:
            sql += " WHERE " + " AND ".join(f"{column} = ?" for column in filters)
        sql += " ORDER BY created_at DESC LIMIT ?"

        rows = await self._fetch_all(sql, [*filters.values(), limit])
        return [self._row_to_task(row) for row in rows]

    async def get_stats(self) -> dict:
        """Task counts by status and tool, plus the success rate of the last 24 hours."""
        by_status = {row[0]: row[1] for row in await self._fetch_all("SELECT status, COUNT(*) FROM tasks GROUP BY status")}
        by_tool = {row[0]: row[1] for row in await self._fetch_all("SELECT tool_name, COUNT(*) FROM tasks GROUP BY tool_name")}

        since = (datetime.now(UTC) - timedelta(days=1)).isoformat()
        row = await self._fetch_one(
            "SELECT COUNT(*), SUM(status = ?) FROM tasks WHERE completed_at IS NOT NULL AND completed_at > ?",
            (TaskStatus.COMPLETED.value, since),
        )
        finished = (row[0] or 0) if row else 0
        succeeded = (row[1] or 0) if row else 0

        return {
            "by_status": by_status,
            "by_tool": by_tool,
            "total_tasks": sum(by_status.values()),
            "running_count": by_status.get(TaskStatus.RUNNING.value, 0),
            "success_rate_24h": round(succeeded / finished * 100, 1) if finished else 0,
        }

    async def cleanup_old_tasks(self, days: int = 7) -> int:
        """Delete finished tasks, and traces, older than `days`. Returns the number of tasks deleted."""
        cutoff = (datetime.now(UTC) - timedelta(days=days)).isoformat()

        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM tasks WHERE created_at < ? AND status IN (?, ?, ?)",
                (cutoff, *_FINISHED),
            )
            deleted = cursor.rowcount
            await db.execute(
                "DELETE FROM spans WHERE trace_id IN (SELECT trace_id FROM traces WHERE created_at < ?)",
                (cutoff,),
            )
            await db.execute("DELETE FROM traces WHERE created_at < ?", (cutoff,))
            await db.commit()
        return deleted

    # --- Traces ---

    async def create_trace(self, trace: TraceRecord) -> None:
        await self._write(
            "INSERT INTO traces (trace_id, name, status, created_at, completed_at, metadata) VALUES (?, ?, ?, ?, ?, ?)",
            (
                trace.trace_id,
                trace.name,
                trace.status,
                _iso(trace.created_at),
                _iso(trace.completed_at),
                json.dumps(trace.metadata, default=str),
            ),
        )

    async def get_trace(self, trace_id: str) -> TraceRecord | None:
        row = await self._fetch_one("SELECT * FROM traces WHERE trace_id = ?", (trace_id,))
        if row is None:
            return None
        return TraceRecord(
            trace_id=row["trace_id"],
            name=row["name"],
            status=row["status"],
            created_at=datetime.fromisoformat(row["created_at"]),
            completed_at=_parse_dt(row["completed_at"]),
            metadata=_loads_dict(row["metadata"]),
        )

    async def update_trace(
        self,
        trace_id: str,
        metadata: dict[str, Any] | None = None,
        status: str | None = None,
    ) -> None:
        """Overwrite trace metadata and/or status.

        This is a plain write; callers that merge into existing metadata must
        serialize their read-modify-write sequence themselves.
        """
        completed_at = datetime.now(UTC).isoformat() if status and status != "running" else None
        await self._write(
            """
            UPDATE traces
            SET metadata = COALESCE(?, metadata),
                status = COALESCE(?, status),
                completed_at = COALESCE(completed_at, ?)
            WHERE trace_id = ?
            """,
            (_dumps(metadata), status, completed_at, trace_id),
        )

    # --- Spans ---

    async def create_span(self, span: SpanRecord) -> None:
        await self._write(
            """
            INSERT INTO spans (
                span_id, trace_id, parent_span_id, name, kind, started_at, ended_at, metadata, output, error
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                span.span_id,
                span.trace_id,
                span.parent_span_id,
                span.name,
                span.kind,
                _iso(span.started_at),
                _iso(span.ended_at),
                json.dumps(span.metadata, default=str),
                _dumps(span.output),
                span.error,
            ),
        )

    async def end_span(self, span_id: str, output: dict[str, Any] | None = None, error: str | None = None) -> None:
        await self._write(
            """
            UPDATE spans
            SET ended_at = COALESCE(ended_at, ?),
                output = COALESCE(?, output),
                error = COALESCE(?, error)
            WHERE span_id = ?
            """,
            (datetime.now(UTC).isoformat(), _dumps(output), _clip(error, MAX_ERROR_CHARS), span_id),
        )

    async def get_spans(self, trace_id: str) -> list[SpanRecord]:
        """All spans of a trace in start order."""
        rows = await self._fetch_all("SELECT * FROM spans WHERE trace_id = ? ORDER BY started_at, rowid", (trace_id,))
        return [
            SpanRecord(
                span_id=row["span_id"],
                trace_id=row["trace_id"],
                parent_span_id=row["parent_span_id"],
                name=row["name"],
                kind=row["kind"],
                started_at=datetime.fromisoformat(row["started_at"]),
                ended_at=_parse_dt(row["ended_at"]),
                metadata=_loads_dict(row["metadata"]),
                output=_loads_dict(row["output"]) if row["output"] else None,
                error=row["error"],
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> TaskRecord:
        return TaskRecord(
            task_id=row["task_id"],
            tool_name=row["tool_name"],
            status=TaskStatus(row["status"]),
            stage=TaskStage(row["stage"]) if row["stage"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            started_at=_parse_dt(row["started_at"]),
            completed_at=_parse_dt(row["completed_at"]),
            progress_current=row["progress_current"],
            progress_total=row["progress_total"],
            progress_message=row["progress_message"],
            input_params=_loads_dict(row["input_params"]),
            result=row["result"],
            error=row["error"],
            trace_id=row["trace_id"],
        )


_task_store: TaskStore | None = None


def get_task_store(db_path: Path | None = None) -> TaskStore:
    """Get the process-wide TaskStore instance."""
    global _task_store
    if _task_store is None:
        _task_store = TaskStore(db_path)
    return _task_store

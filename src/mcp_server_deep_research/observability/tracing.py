"""Trace and span plumbing for research runs.

The research engine only depends on the ``Tracer`` protocol. ``StoreTracer``
persists traces into the ``TaskStore``; ``NullTracer`` is used when telemetry
is disabled. Every tracer handed to the engine is wrapped in
``BestEffortTracer`` so that telemetry failures never change a research result.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any, Protocol

from .models import SpanRecord, TokenUsage, TraceRecord
from .store import TaskStore

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class TraceContext:
    """Trace id plus the current span id, passed by value down the research tree.

    Children derive new contexts with ``with_span``; a parent's context is never
    modified.
    """

    trace_id: str
    span_id: str | None = None

    def with_span(self, span_id: str | None) -> "TraceContext":
        return replace(self, span_id=span_id)


class Tracer(Protocol):
    async def start_trace(self, name: str, metadata: dict[str, Any] | None = None) -> TraceContext: ...

    async def end_trace(self, trace: TraceContext, status: str, metadata: dict[str, Any] | None = None) -> None: ...

    async def start_span(self, parent: TraceContext, name: str, metadata: dict[str, Any] | None = None) -> TraceContext: ...

    async def end_span(self, span: TraceContext, output: dict[str, Any] | None = None, error: str | None = None) -> None: ...

    async def record_generation(
        self,
        trace: TraceContext,
        operation: str,
        model: str,
        usage: TokenUsage,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


class NullTracer:
    """Tracer that records nothing but still hands out distinct ids."""

    async def start_trace(self, name: str, metadata: dict[str, Any] | None = None) -> TraceContext:
        return TraceContext(trace_id=_new_id())

    async def end_trace(self, trace: TraceContext, status: str, metadata: dict[str, Any] | None = None) -> None:
        return None

    async def start_span(self, parent: TraceContext, name: str, metadata: dict[str, Any] | None = None) -> TraceContext:
        return parent.with_span(_new_id())

    async def end_span(self, span: TraceContext, output: dict[str, Any] | None = None, error: str | None = None) -> None:
        return None

    async def record_generation(
        self,
        trace: TraceContext,
        operation: str,
        model: str,
        usage: TokenUsage,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        return None


class StoreTracer:
    """Tracer that persists traces, spans and token usage into a TaskStore.

    Trace metadata is read, merged and written back. Concurrent branches would
    lose updates if those sequences interleaved, so every metadata mutation
    goes through one lock-guarded writer.
    """

    def __init__(self, store: TaskStore):
        self.store = store
        self._metadata_lock = asyncio.Lock()

    async def start_trace(self, name: str, metadata: dict[str, Any] | None = None) -> TraceContext:
        trace = TraceRecord(trace_id=_new_id(), name=name, metadata={**(metadata or {}), "total_tokens": 0, "token_usage": []})
        await self.store.create_trace(trace)
        return TraceContext(trace_id=trace.trace_id)

    async def end_trace(self, trace: TraceContext, status: str, metadata: dict[str, Any] | None = None) -> None:
        async with self._metadata_lock:
            record = await self.store.get_trace(trace.trace_id)
            if record is None:
                logger.warning(f"Trace {trace.trace_id} not found while closing it")
                return
            merged = {**record.metadata, **(metadata or {})}
            await self.store.update_trace(trace.trace_id, metadata=merged, status=status)

    async def start_span(self, parent: TraceContext, name: str, metadata: dict[str, Any] | None = None) -> TraceContext:
        span = SpanRecord(
            span_id=_new_id(),
            trace_id=parent.trace_id,
            parent_span_id=parent.span_id,
            name=name,
            metadata=metadata or {},
        )
        await self.store.create_span(span)
        return parent.with_span(span.span_id)

    async def end_span(self, span: TraceContext, output: dict[str, Any] | None = None, error: str | None = None) -> None:
        if span.span_id is None:
            return
        await self.store.end_span(span.span_id, output=output, error=error)

    async def record_generation(
        self,
        trace: TraceContext,
        operation: str,
        model: str,
        usage: TokenUsage,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        now = datetime.now(UTC)
        usage_entry = {
            "operation": operation,
            "model": model,
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "total_tokens": usage.total_tokens,
            "timestamp": now.isoformat(),
        }
        await self.store.create_span(
            SpanRecord(
                span_id=_new_id(),
                trace_id=trace.trace_id,
                parent_span_id=trace.span_id,
                name=operation,
                kind="generation",
                started_at=now,
                ended_at=now,
                metadata={**(metadata or {}), **usage_entry},
            )
        )

        async with self._metadata_lock:
            record = await self.store.get_trace(trace.trace_id)
            if record is None:
                logger.warning(f"Trace {trace.trace_id} not found while recording {operation} usage")
                return
            merged = dict(record.metadata)
            merged["total_tokens"] = int(merged.get("total_tokens", 0)) + usage.total_tokens
            merged["token_usage"] = [*merged.get("token_usage", []), usage_entry]
            await self.store.update_trace(trace.trace_id, metadata=merged)


class BestEffortTracer:
    """Wraps a tracer so that failures are logged and ignored.

    A failed ``start_trace`` yields a detached context and a failed
    ``start_span`` yields the parent context, so callers can always proceed.
    """

    def __init__(self, inner: Tracer):
        self.inner = inner

    async def start_trace(self, name: str, metadata: dict[str, Any] | None = None) -> TraceContext:
        try:
            return await self.inner.start_trace(name, metadata)
        except Exception as e:
            logger.warning(f"Failed to start trace {name}: {e}")
            return TraceContext(trace_id=_new_id())

    async def end_trace(self, trace: TraceContext, status: str, metadata: dict[str, Any] | None = None) -> None:
        try:
            await self.inner.end_trace(trace, status, metadata)
        except Exception as e:
            logger.warning(f"Failed to close trace {trace.trace_id}: {e}")

    async def start_span(self, parent: TraceContext, name: str, metadata: dict[str, Any] | None = None) -> TraceContext:
        try:
            return await self.inner.start_span(parent, name, metadata)
        except Exception as e:
            logger.warning(f"Failed to start span {name}: {e}")
            return parent

    async def end_span(self, span: TraceContext, output: dict[str, Any] | None = None, error: str | None = None) -> None:
        try:
            await self.inner.end_span(span, output, error)
        except Exception as e:
            logger.warning(f"Failed to end span {span.span_id}: {e}")

    async def record_generation(
        self,
        trace: TraceContext,
        operation: str,
        model: str,
        usage: TokenUsage,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        try:
            await self.inner.record_generation(trace, operation, model, usage, metadata)
        except Exception as e:
            logger.warning(f"Failed to record {operation} generation: {e}")


def best_effort(tracer: Tracer | None) -> BestEffortTracer:
    """Wrap ``tracer`` (or a NullTracer) unless it is already wrapped."""
    if isinstance(tracer, BestEffortTracer):
        return tracer
    return BestEffortTracer(tracer or NullTracer())

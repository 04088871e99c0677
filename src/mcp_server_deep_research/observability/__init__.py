"""Observability module for task tracking, tracing, and structured logging."""

from .logging import bind_task_context, bind_trace_id, clear_task_context, get_task_logger, setup_structured_logging
from .models import SpanRecord, TaskRecord, TaskStage, TaskStatus, TokenUsage, TraceRecord
from .store import TaskStore, get_task_store
from .tracing import BestEffortTracer, NullTracer, StoreTracer, TraceContext, Tracer, best_effort

__all__ = [
    "BestEffortTracer",
    "NullTracer",
    "SpanRecord",
    "StoreTracer",
    "TaskRecord",
    "TaskStage",
    "TaskStatus",
    "TaskStore",
    "TokenUsage",
    "TraceContext",
    "TraceRecord",
    "Tracer",
    "best_effort",
    "bind_task_context",
    "bind_trace_id",
    "clear_task_context",
    "get_task_logger",
    "get_task_store",
    "setup_structured_logging",
]

"""Structured logging with per-task context using structlog and contextvars."""

import logging
from contextvars import ContextVar

import structlog

# Context of the research run currently executing in this async context
current_task_id: ContextVar[str | None] = ContextVar("current_task_id", default=None)
current_tool_name: ContextVar[str | None] = ContextVar("current_tool_name", default=None)
current_trace_id: ContextVar[str | None] = ContextVar("current_trace_id", default=None)

_configured = False


def setup_structured_logging(level: str = "INFO") -> None:
    """Configure structlog with JSON output and per-task context.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
    """
    global _configured
    if _configured:
        return

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
    )

    _configured = True


def bind_task_context(task_id: str, tool_name: str, trace_id: str | None = None) -> None:
    """Bind research run context for all subsequent logs in this async context."""
    current_task_id.set(task_id)
    current_tool_name.set(tool_name)
    current_trace_id.set(trace_id)
    context = {"task_id": task_id, "tool_name": tool_name}
    if trace_id:
        context["trace_id"] = trace_id
    structlog.contextvars.bind_contextvars(**context)


def bind_trace_id(trace_id: str) -> None:
    """Attach a trace id once the root trace for the run exists."""
    current_trace_id.set(trace_id)
    structlog.contextvars.bind_contextvars(trace_id=trace_id)


def clear_task_context() -> None:
    """Clear task context after the run completes."""
    current_task_id.set(None)
    current_tool_name.set(None)
    current_trace_id.set(None)
    structlog.contextvars.clear_contextvars()


def get_task_logger(name: str = "mcp_server_deep_research") -> structlog.stdlib.BoundLogger:
    """Get a structlog logger that carries the bound run context."""
    return structlog.get_logger(name)


def get_current_task_id() -> str | None:
    return current_task_id.get()


def get_current_trace_id() -> str | None:
    return current_trace_id.get()

"""Plaintext execution log and terminal progress bars for a research run."""

import json
import logging
import sys
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

from .research.models import GoalQuery, PlainQuery, ResearchProgress

logger = logging.getLogger(__name__)

PROGRESS_LINES = 4
BAR_LENGTH = 20


def progress_bar(current: int, total: int, length: int = BAR_LENGTH) -> str:
    """Render ``current/total`` as a bar of filled and empty blocks."""
    if total <= 0:
        filled = 0
    else:
        filled = round(length * min(max(current, 0), total) / total)
    return "█" * filled + "░" * (length - filled)


def _percent(current: int, total: int) -> int:
    return round(current / total * 100) if total > 0 else 0


def _format_arg(arg: object) -> str:
    if isinstance(arg, dict | list):
        return json.dumps(arg, indent=2, default=str)
    return str(arg)


def describe_query(progress: ResearchProgress) -> str:
    match progress.current_query:
        case PlainQuery(text=text):
            return text
        case GoalQuery(query=query, research_goal=goal):
            return query or goal
        case _:
            return ""


def format_progress(progress: ResearchProgress) -> list[str]:
    """Progress area lines: depth, breadth and query bars plus the current query."""
    depth_done = progress.total_depth - progress.current_depth
    breadth_done = progress.total_breadth - progress.current_breadth
    lines = [
        f"Depth:    [{progress_bar(depth_done, progress.total_depth)}] {_percent(depth_done, progress.total_depth)}%",
        f"Breadth:  [{progress_bar(breadth_done, progress.total_breadth)}] {_percent(breadth_done, progress.total_breadth)}%",
        f"Queries:  [{progress_bar(progress.completed_queries, progress.total_queries)}] "
        f"{_percent(progress.completed_queries, progress.total_queries)}%",
    ]
    current = describe_query(progress)
    lines.append(f"Current:  {current}" if current else "")
    return lines


class OutputManager:
    """Writes a timestamped execution log and draws progress bars on a TTY.

    Every line logged is appended to ``log_path``; unless ``silent``, it is
    also printed. Progress updates go to the log file and, on a terminal,
    redraw a fixed area of ``PROGRESS_LINES`` lines.
    """

    def __init__(
        self,
        log_path: Path,
        silent: bool = False,
        stream: TextIO | None = None,
        on_log: Callable[[str], None] | None = None,
    ):
        self.log_path = Path(log_path)
        self.silent = silent
        self.on_log = on_log
        self.stream = stream or sys.stdout
        self.progress_area: list[str] = []

        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._interactive = not silent and self.stream.isatty()
        if self._interactive:
            self.stream.write("\n" * PROGRESS_LINES)

        started = datetime.now(UTC).isoformat()
        self.log_path.write_text(f"=== Deep Research Log - Started at {started} ===\n\n", encoding="utf-8")

    def log(self, *args: object) -> None:
        message = " ".join(_format_arg(arg) for arg in args)
        if not self.silent:
            print(message, file=self.stream)
        self._append(f"[{datetime.now(UTC).isoformat()}] {message}\n")
        if self.on_log is not None:
            self.on_log(message)

    def update_progress(self, progress: ResearchProgress) -> None:
        self.progress_area = format_progress(progress)
        self._append("--- Progress Update ---\n" + "\n".join(self.progress_area) + "\n")
        if self._interactive:
            self._draw_progress()

    def _append(self, text: str) -> None:
        with self.log_path.open("a", encoding="utf-8") as f:
            f.write(text)

    def _draw_progress(self) -> None:
        # Move the cursor up to the progress area and clear to the end of screen
        self.stream.write(f"\x1b[{PROGRESS_LINES}A\x1b[0J")
        self.stream.write("\n".join(self.progress_area) + "\n")
        self.stream.flush()

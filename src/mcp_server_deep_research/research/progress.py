"""Progress state shared by every level of one research invocation."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable

from .models import CurrentQuery, ResearchProgress, ResearchStage

logger = logging.getLogger(__name__)

ProgressSink = Callable[[ResearchProgress], None]


class ProgressTracker:
    """Owns the ``ResearchProgress`` of one top-level research call.

    All mutations happen synchronously on the event loop, so concurrent
    branches cannot lose updates. Sinks receive copies and run inline;
    a sink that raises is logged and skipped.

    Counting rules:
    - ``total_queries`` grows by the number of queries each level plans.
    - ``completed_queries`` grows by one when a branch finishes its own
      fetch and extraction, whether it succeeded or failed, before it
      recurses. It therefore never exceeds ``total_queries``.
    - ``current_depth`` is the smallest remaining depth reached so far and
      ``current_breadth`` is the breadth of that level.
    """

    def __init__(self, total_depth: int, total_breadth: int, sinks: Iterable[ProgressSink | None] = ()):
        self._state = ResearchProgress(
            current_depth=total_depth,
            total_depth=total_depth,
            current_breadth=total_breadth,
            total_breadth=total_breadth,
        )
        self._sinks = [sink for sink in sinks if sink is not None]

    @property
    def snapshot(self) -> ResearchProgress:
        return self._state.model_copy(deep=True)

    def set_stage(self, stage: ResearchStage, current_query: CurrentQuery | None = None) -> None:
        self._state.stage = stage
        if current_query is not None:
            self._state.current_query = current_query
        self._publish()

    def plan_level(self, num_queries: int) -> None:
        """Register the queries one level has planned."""
        self._state.total_queries += num_queries
        self._state.stage = ResearchStage.FANNING_OUT
        self._publish()

    def start_branch(self, current_query: CurrentQuery) -> None:
        self._state.current_query = current_query
        self._state.stage = ResearchStage.FETCHING
        self._publish()

    def complete_branch(self, current_query: CurrentQuery, recursing: bool) -> None:
        """Count a branch as completed once its own fetch and extraction ended."""
        self._state.completed_queries = min(self._state.completed_queries + 1, self._state.total_queries)
        self._state.current_query = current_query
        self._state.stage = ResearchStage.RECURSING if recursing else ResearchStage.TERMINAL
        self._publish()

    def descend(self, depth: int, breadth: int) -> None:
        """Record that a branch is recursing into a level with ``depth`` and ``breadth``."""
        if depth < self._state.current_depth:
            self._state.current_depth = depth
            self._state.current_breadth = min(breadth, self._state.total_breadth)
            self._publish()

    def _publish(self) -> None:
        if not self._sinks:
            return
        snapshot = self.snapshot
        for sink in self._sinks:
            try:
                sink(snapshot)
            except Exception as e:
                logger.warning(f"Progress sink failed: {e}")


class ProgressRelay:
    """Forwards snapshots from the synchronous sink to an async consumer.

    Snapshots are queued and delivered in order by one pump task, so a slow
    consumer never blocks the research tree and consumer writes never
    interleave. Use as an async context manager around the research call;
    leaving the context drains the queue.
    """

    def __init__(self, consumer: Callable[[ResearchProgress], Awaitable[None]]):
        self._consumer = consumer
        self._queue: asyncio.Queue[ResearchProgress | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    def __call__(self, snapshot: ResearchProgress) -> None:
        self._queue.put_nowait(snapshot)

    async def __aenter__(self) -> "ProgressRelay":
        self._task = asyncio.create_task(self._pump())
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self._queue.put_nowait(None)
        if self._task is not None:
            await self._task

    async def _pump(self) -> None:
        closed = False
        while not closed:
            latest = await self._queue.get()
            if latest is None:
                return
            # Skip to the newest snapshot when several are waiting
            while not self._queue.empty():
                queued = self._queue.get_nowait()
                if queued is None:
                    closed = True
                    break
                latest = queued
            try:
                await self._consumer(latest)
            except Exception as e:
                logger.warning(f"Progress consumer failed: {e}")

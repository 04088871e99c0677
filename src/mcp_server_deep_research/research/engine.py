"""Recursive breadth/depth research engine.

One call to ``ResearchEngine.research`` plans ``breadth`` sub-queries, runs
them with bounded concurrency (fetch, then extract) and, while depth
remains and follow-up questions were found, recurses into a narrower level
seeded with those questions. Branch results are unioned on the way back up.
"""

import asyncio
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from ..exceptions import FetchError, FetchTimeoutError, GenerationError
from ..observability.tracing import BestEffortTracer, TraceContext, Tracer, best_effort
from ..text import trim_prompt
from .models import (
    ExtractionResult,
    GoalQuery,
    PlainQuery,
    ResearchProgress,
    ResearchQuery,
    ResearchResult,
    ResearchStage,
    SearchResponse,
    unique_strings,
)
from .progress import ProgressSink, ProgressTracker
from .prompts import build_follow_up_query

logger = logging.getLogger(__name__)


class Planner(Protocol):
    async def plan(
        self,
        query: str,
        num_queries: int,
        prior_learnings: list[str] | None = None,
        trace: TraceContext | None = None,
    ) -> list[ResearchQuery]: ...


class Fetcher(Protocol):
    async def search(self, query_text: str, limit: int = 5, timeout: float = 15.0) -> SearchResponse: ...


class Extractor(Protocol):
    async def extract(
        self,
        query: str,
        contents: list[str],
        num_learnings: int,
        num_follow_up_questions: int,
        trace: TraceContext | None = None,
    ) -> ExtractionResult: ...


class ResearchOutput(Protocol):
    """Receives free-text log lines and progress snapshots."""

    def log(self, *args: object) -> None: ...

    def update_progress(self, progress: ResearchProgress) -> None: ...


@dataclass(frozen=True)
class EngineConfig:
    concurrency_limit: int = 3
    fetch_limit: int = 5
    fetch_timeout: float = 15.0
    extract_timeout: float = 60.0
    content_token_limit: int = 25_000


@dataclass(frozen=True)
class _RunContext:
    """Everything that stays fixed across one top-level research call."""

    tracker: ProgressTracker
    tracer: BestEffortTracer
    output: ResearchOutput | None
    config: EngineConfig

    def log(self, message: str) -> None:
        logger.info(message)
        if self.output is None:
            return
        try:
            self.output.log(message)
        except Exception as e:
            logger.warning(f"Research output failed to log: {e}")


class ResearchEngine:
    """Drives the recursive research tree over injected collaborators.

    Fetch and extraction failures (``FetchError``, ``GenerationError``) are
    contained to the branch they happen in and turn into an empty
    contribution. Any other exception is a bug: it cancels the sibling
    branches of its fan-out and propagates to the caller.
    """

    def __init__(
        self,
        planner: Planner,
        fetcher: Fetcher,
        extractor: Extractor,
        *,
        config: EngineConfig | None = None,
        tracer: Tracer | None = None,
        trim: Callable[[str, int], str] = trim_prompt,
    ):
        self.planner = planner
        self.fetcher = fetcher
        self.extractor = extractor
        self.config = config or EngineConfig()
        self.tracer = best_effort(tracer)
        self.trim = trim

        if self.config.concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")

    async def research(
        self,
        query: str,
        breadth: int,
        depth: int,
        learnings: list[str] | None = None,
        visited_urls: list[str] | None = None,
        on_progress: ProgressSink | None = None,
        trace: TraceContext | None = None,
        output: ResearchOutput | None = None,
    ) -> ResearchResult:
        """Research ``query`` and return every learning and URL found.

        The result always contains ``learnings`` and ``visited_urls`` passed
        in, followed by newly discovered values in first-seen order.

        Args:
            query: Research topic
            breadth: Sub-queries to plan at the top level
            depth: Remaining levels of recursion
            learnings: Learnings already known
            visited_urls: Sources already visited
            on_progress: Called synchronously with each progress snapshot
            trace: Trace context the run's spans are attached to
            output: Receives log lines and progress snapshots

        Raises:
            ValueError: Empty query or negative breadth/depth.
        """
        if not query or not query.strip():
            raise ValueError("query must be a non-empty string")
        if breadth < 0:
            raise ValueError(f"breadth must be >= 0, got {breadth}")
        if depth < 0:
            raise ValueError(f"depth must be >= 0, got {depth}")

        tracker = ProgressTracker(
            total_depth=depth,
            total_breadth=breadth,
            sinks=[on_progress, output.update_progress if output is not None else None],
        )
        ctx = _RunContext(tracker=tracker, tracer=self.tracer, output=output, config=self.config)

        result = await self._research_level(
            ctx,
            query=query,
            breadth=breadth,
            depth=depth,
            learnings=unique_strings(learnings or []),
            visited_urls=unique_strings(visited_urls or []),
            trace=trace,
        )
        tracker.set_stage(ResearchStage.DONE)
        return result

    async def _research_level(
        self,
        ctx: _RunContext,
        query: str,
        breadth: int,
        depth: int,
        learnings: list[str],
        visited_urls: list[str],
        trace: TraceContext | None,
    ) -> ResearchResult:
        level_trace = None
        if trace is not None:
            level_trace = await ctx.tracer.start_span(trace, "research-level", {"query": query, "breadth": breadth, "depth": depth})

        try:
            result = await self._run_level(ctx, query, breadth, depth, learnings, visited_urls, level_trace)
        except Exception as e:
            if level_trace is not None:
                await ctx.tracer.end_span(level_trace, error=f"{type(e).__name__}: {e}")
            raise

        if level_trace is not None:
            await ctx.tracer.end_span(
                level_trace,
                output={"learnings": len(result.learnings), "visited_urls": len(result.visited_urls)},
            )
        return result

    async def _run_level(
        self,
        ctx: _RunContext,
        query: str,
        breadth: int,
        depth: int,
        learnings: list[str],
        visited_urls: list[str],
        trace: TraceContext | None,
    ) -> ResearchResult:
        ctx.tracker.set_stage(ResearchStage.PLANNING, PlainQuery(text=query))
        try:
            queries = await self.planner.plan(query, breadth, learnings, trace=trace)
        except GenerationError as e:
            ctx.log(f"Failed to plan queries for '{query[:80]}': {e}")
            queries = []
        queries = queries[:breadth]

        if not queries:
            ctx.log(f"No queries planned for '{query[:80]}'")
            return ResearchResult(learnings=list(learnings), visited_urls=list(visited_urls), query=query)

        ctx.log(f"Created {len(queries)} queries: {[q.query for q in queries]}")
        ctx.tracker.plan_level(len(queries))

        branch_results = await self._fan_out(ctx, queries, breadth, depth, learnings, visited_urls, trace)

        ctx.tracker.set_stage(ResearchStage.MERGING)
        return ResearchResult.merge(branch_results, query=query, learnings=learnings, visited_urls=visited_urls)

    async def _fan_out(
        self,
        ctx: _RunContext,
        queries: list[ResearchQuery],
        breadth: int,
        depth: int,
        learnings: list[str],
        visited_urls: list[str],
        trace: TraceContext | None,
    ) -> list[ResearchResult]:
        """Run one branch per query, at most ``concurrency_limit`` at a time."""
        semaphore = asyncio.Semaphore(ctx.config.concurrency_limit)

        async def limited(research_query: ResearchQuery) -> ResearchResult:
            async with semaphore:
                return await self._run_branch(ctx, research_query, breadth, depth, learnings, visited_urls, trace)

        tasks = [asyncio.create_task(limited(q)) for q in queries]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _run_branch(
        self,
        ctx: _RunContext,
        research_query: ResearchQuery,
        breadth: int,
        depth: int,
        learnings: list[str],
        visited_urls: list[str],
        trace: TraceContext | None,
    ) -> ResearchResult:
        current = GoalQuery.from_research_query(research_query)
        branch_trace = None
        if trace is not None:
            branch_trace = await ctx.tracer.start_span(
                trace, "research-branch", {"query": current.query, "research_goal": current.research_goal}
            )

        ctx.tracker.start_branch(current)
        try:
            response = await self._fetch(ctx, research_query.query)
            new_urls = response.urls
            contents = [self.trim(content, ctx.config.content_token_limit) for content in response.contents]
            ctx.log(f"Ran {research_query.query}, found {len(contents)} contents")

            ctx.tracker.set_stage(ResearchStage.EXTRACTING, current)
            extracted = await self._extract(ctx, research_query.query, contents, breadth, branch_trace)
        except (FetchError, GenerationError) as e:
            if isinstance(e, FetchTimeoutError):
                ctx.log(f"Timeout error running query: {research_query.query}: {e}")
            else:
                ctx.log(f"Error running query: {research_query.query}: {e}")
            # Failed branches still count as completed
            ctx.tracker.complete_branch(current, recursing=False)
            if branch_trace is not None:
                await ctx.tracer.end_span(branch_trace, error=f"{type(e).__name__}: {e}")
            return ResearchResult(query=research_query.query)
        except Exception as e:
            if branch_trace is not None:
                await ctx.tracer.end_span(branch_trace, error=f"{type(e).__name__}: {e}")
            raise

        all_learnings = unique_strings(learnings, extracted.learnings)
        all_urls = unique_strings(visited_urls, new_urls)
        next_depth = depth - 1
        recursing = next_depth > 0 and bool(extracted.follow_up_questions)
        ctx.tracker.complete_branch(current, recursing=recursing)

        if recursing:
            next_breadth = math.ceil(breadth / 2)
            ctx.log(f"Researching deeper, breadth: {next_breadth}, depth: {next_depth}")
            ctx.tracker.descend(next_depth, next_breadth)
            next_query = build_follow_up_query(current.goal, extracted.follow_up_questions)
            try:
                result = await self._research_level(
                    ctx,
                    query=next_query,
                    breadth=next_breadth,
                    depth=next_depth,
                    learnings=all_learnings,
                    visited_urls=all_urls,
                    trace=branch_trace if branch_trace is not None else trace,
                )
            except Exception as e:
                if branch_trace is not None:
                    await ctx.tracer.end_span(branch_trace, error=f"{type(e).__name__}: {e}")
                raise
        else:
            ctx.log(f"Reached maximum depth or no follow-ups for '{research_query.query}'")
            result = ResearchResult(learnings=all_learnings, visited_urls=all_urls, query=research_query.query)

        if branch_trace is not None:
            await ctx.tracer.end_span(
                branch_trace,
                output={"learnings": len(result.learnings), "visited_urls": len(result.visited_urls), "recursed": recursing},
            )
        return result

    async def _fetch(self, ctx: _RunContext, query_text: str) -> SearchResponse:
        timeout = ctx.config.fetch_timeout
        try:
            return await asyncio.wait_for(
                self.fetcher.search(query_text, limit=ctx.config.fetch_limit, timeout=timeout),
                timeout=timeout,
            )
        except TimeoutError as e:
            raise FetchTimeoutError(f"Search timed out after {timeout}s") from e

    async def _extract(
        self,
        ctx: _RunContext,
        query_text: str,
        contents: list[str],
        breadth: int,
        trace: TraceContext | None,
    ) -> ExtractionResult:
        timeout = ctx.config.extract_timeout
        try:
            return await asyncio.wait_for(
                self.extractor.extract(query_text, contents, breadth, breadth, trace=trace),
                timeout=timeout,
            )
        except TimeoutError as e:
            raise GenerationError(f"Extraction timed out after {timeout}s") from e

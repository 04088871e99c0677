"""Pytest configuration and fixtures for mcp-server-deep-research tests."""

import asyncio
import itertools
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Any

import pytest

from mcp_server_deep_research import config as config_module
from mcp_server_deep_research.config import AppSettings, ResearchSettings, TelemetrySettings
from mcp_server_deep_research.exceptions import FetchError, GenerationError
from mcp_server_deep_research.observability.tracing import TraceContext, best_effort
from mcp_server_deep_research.research.engine import ResearchEngine
from mcp_server_deep_research.research.models import (
    ActionPlanDraft,
    ActionPlanResponse,
    ExtractionResult,
    FinalAnswer,
    FinalReport,
    ResearchQuery,
    SearchItem,
    SearchResponse,
)
from mcp_server_deep_research.research.report import ReportWriter
from mcp_server_deep_research.research.service import ResearchRuntime


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: Tests that take longer to run")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def isolated_config_file(tmp_path, monkeypatch):
    """Point the JSON config file at an empty temp location for every test."""
    path = tmp_path / "config.json"
    monkeypatch.setattr(config_module, "CONFIG_FILE", path)
    return path


class FakePlanner:
    """Plans ``num_queries`` unique queries per call and records every call."""

    def __init__(self, fail_on: set[str] | None = None, cap: int | None = None):
        self.calls: list[tuple[str, int, list[str]]] = []
        self.fail_on = fail_on or set()
        self.cap = cap
        self._ids = itertools.count(1)

    async def plan(self, query, num_queries, prior_learnings=None, trace=None):
        self.calls.append((query, num_queries, list(prior_learnings or [])))
        if query in self.fail_on:
            raise GenerationError(f"planner failed for {query}")
        count = num_queries if self.cap is None else min(num_queries, self.cap)
        return [
            ResearchQuery(query=f"q{n}", research_goal=f"goal {n}")
            for n in (next(self._ids) for _ in range(count))
        ]


class FakeFetcher:
    """Returns one page per query; selected queries fail, time out or block."""

    def __init__(
        self,
        fail: set[str] | None = None,
        hang: set[str] | None = None,
        hang_all: bool = False,
        delay: float = 0.0,
        shared_url: str | None = None,
    ):
        self.fail = fail or set()
        self.hang = hang or set()
        self.hang_all = hang_all
        self.delay = delay
        self.shared_url = shared_url
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def search(self, query_text, limit=5, timeout=15.0):
        self.calls.append(query_text)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.hang_all or query_text in self.hang:
                await asyncio.sleep(3600)
            if self.delay:
                await asyncio.sleep(self.delay)
            if query_text in self.fail:
                raise FetchError(f"search failed for {query_text}")
            items = [SearchItem(url=f"https://example.com/{query_text}", markdown=f"content for {query_text}")]
            if self.shared_url:
                items.append(SearchItem(url=self.shared_url, markdown="shared content"))
            return SearchResponse(items=items)
        finally:
            self.active -= 1


class FakeExtractor:
    """Emits one learning per query and a configurable number of follow-ups."""

    def __init__(self, follow_ups: int = 1, shared_learning: str | None = None, crash_on: set[str] | None = None):
        self.follow_ups = follow_ups
        self.shared_learning = shared_learning
        self.crash_on = crash_on or set()
        self.calls: list[tuple[str, list[str], int, int]] = []

    async def extract(self, query, contents, num_learnings, num_follow_up_questions, trace=None):
        self.calls.append((query, list(contents), num_learnings, num_follow_up_questions))
        if query in self.crash_on:
            raise RuntimeError(f"extractor bug on {query}")
        learnings = [f"learning from {query}"]
        if self.shared_learning:
            learnings.append(self.shared_learning)
        questions = [f"follow-up {i} for {query}" for i in range(self.follow_ups)]
        return ExtractionResult(learnings=learnings, follow_up_questions=questions)


class RecordingTracer:
    """In-memory tracer that remembers span parentage and generations."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.spans: dict[str, dict[str, Any]] = {}
        self.generations: list[dict[str, Any]] = []
        self.ended_traces: list[tuple[str, str]] = []

    async def start_trace(self, name, metadata=None):
        return TraceContext(trace_id=f"trace-{next(self._ids)}")

    async def end_trace(self, trace, status, metadata=None):
        self.ended_traces.append((trace.trace_id, status))

    async def start_span(self, parent, name, metadata=None):
        span_id = f"span-{next(self._ids)}"
        self.spans[span_id] = {"name": name, "parent": parent.span_id, "metadata": metadata or {}, "ended": False}
        return parent.with_span(span_id)

    async def end_span(self, span, output=None, error=None):
        self.spans[span.span_id].update(ended=True, output=output, error=error)

    async def record_generation(self, trace, operation, model, usage, metadata=None):
        self.generations.append({"parent": trace.span_id, "operation": operation, "tokens": usage.total_tokens})


class FakeLLM:
    """Chat model stand-in: returns queued completions from ``ainvoke``."""

    model = "fake-model"

    def __init__(self, *completions: Any, usage: Any = None, delay: float = 0.0, error: Exception | None = None):
        self.completions = list(completions)
        self.usage = usage
        self.delay = delay
        self.error = error
        self.calls: list[tuple[list, Any]] = []

    async def ainvoke(self, messages, output_format=None):
        self.calls.append((messages, output_format))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(completion=self.completions.pop(0), usage=self.usage)


@pytest.fixture
def planner():
    return FakePlanner()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def extractor():
    return FakeExtractor()


class ReportLLM:
    """Chat model stand-in that answers report and action plan calls."""

    model = "fake-report-model"

    async def ainvoke(self, messages, output_format=None):
        if output_format is FinalReport:
            completion = FinalReport(report_markdown="# Findings")
        elif output_format is FinalAnswer:
            completion = FinalAnswer(exact_answer="Yes, with permits")
        elif output_format is ActionPlanResponse:
            completion = ActionPlanResponse(action_plan=ActionPlanDraft(title="Plan", steps=["start"], considerations=[]))
        else:
            raise AssertionError(f"unexpected output format {output_format}")
        return SimpleNamespace(completion=completion, usage=None)


def make_runtime_factory(gate: asyncio.Event | None = None, error: Exception | None = None):
    """Runtime factory wiring fake collaborators; ``gate`` holds the run until set."""

    @asynccontextmanager
    async def factory(app_settings, tracer=None):
        if error is not None:
            raise error
        if gate is not None:
            await gate.wait()
        llm = ReportLLM()
        tracer = best_effort(tracer)
        yield ResearchRuntime(
            llm=llm,
            engine=ResearchEngine(FakePlanner(), FakeFetcher(), FakeExtractor(), tracer=tracer),
            report_writer=ReportWriter(llm, tracer=tracer),
            tracer=tracer,
            default_breadth=2,
            default_depth=1,
            results_dir=app_settings.get_results_dir(),
        )

    return factory


@pytest.fixture
def app_settings(tmp_path):
    return AppSettings(
        research=ResearchSettings(results_dir=str(tmp_path / "results")),
        telemetry=TelemetrySettings(db_path=str(tmp_path / "tasks.db")),
    )

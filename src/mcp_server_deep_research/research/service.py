"""End-to-end research pipeline: engine run, report, action plan and artifacts."""

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from ..config import AppSettings
from ..observability.tracing import Tracer, best_effort
from ..output import OutputManager
from ..providers import get_llm_from_settings
from ..utils import resolve_artifact_paths, write_json_artifact, write_text_artifact
from .engine import EngineConfig, ResearchEngine
from .extractor import LearningExtractor
from .fetcher import FirecrawlFetcher
from .models import ActionPlan, ResearchOptions, ResearchOutcome
from .planner import QueryPlanner
from .progress import ProgressSink
from .report import ReportWriter

if TYPE_CHECKING:
    from browser_use.llm.base import BaseChatModel

logger = logging.getLogger(__name__)

ACTIONABLE_IDEAS_COUNT = 10
CONSIDERATIONS_COUNT = 5


@dataclass(frozen=True)
class ResearchRuntime:
    """Collaborators wired together from settings for one process or job."""

    llm: "BaseChatModel"
    engine: ResearchEngine
    report_writer: ReportWriter
    tracer: Tracer
    default_breadth: int
    default_depth: int
    results_dir: Path


@asynccontextmanager
async def research_runtime(
    app_settings: AppSettings,
    tracer: Tracer | None = None,
    llm: "BaseChatModel | None" = None,
    http_client: httpx.AsyncClient | None = None,
) -> AsyncIterator[ResearchRuntime]:
    """Build the engine and report writer from settings.

    The search client is closed on exit unless ``http_client`` was passed in.

    Raises:
        LLMProviderError: The configured model cannot be created.
    """
    llm = llm or get_llm_from_settings(app_settings.llm)
    tracer = best_effort(tracer)
    research = app_settings.research

    fetcher = FirecrawlFetcher(
        api_key=app_settings.search.get_api_key(),
        base_url=app_settings.search.base_url,
        client=http_client,
    )
    engine = ResearchEngine(
        QueryPlanner(llm, tracer=tracer),
        fetcher,
        LearningExtractor(llm, tracer=tracer),
        config=EngineConfig(
            concurrency_limit=research.concurrency_limit,
            fetch_limit=app_settings.search.result_limit,
            fetch_timeout=app_settings.search.timeout,
            extract_timeout=research.extract_timeout,
            content_token_limit=research.content_token_limit,
        ),
        tracer=tracer,
    )
    try:
        yield ResearchRuntime(
            llm=llm,
            engine=engine,
            report_writer=ReportWriter(llm, tracer=tracer),
            tracer=tracer,
            default_breadth=research.default_breadth,
            default_depth=research.default_depth,
            results_dir=app_settings.get_results_dir(),
        )
    finally:
        await fetcher.aclose()


async def run_research(
    options: ResearchOptions,
    runtime: ResearchRuntime,
    on_progress: ProgressSink | None = None,
    on_log: Callable[[str], None] | None = None,
    silent: bool = True,
) -> ResearchOutcome:
    """Run research for ``options.query`` and write the report, action plan and log.

    A failed action plan is logged and left out of the outcome. Any other
    failure is logged, closes the trace as failed and propagates.
    """
    breadth = options.breadth if options.breadth is not None else runtime.default_breadth
    depth = options.depth if options.depth is not None else runtime.default_depth
    output_dir = Path(options.output_dir).expanduser() if options.output_dir else runtime.results_dir

    paths = resolve_artifact_paths(
        output_dir,
        log_file_name=options.log_file_name,
        report_file_name=options.report_file_name,
        action_plan_file_name=options.action_plan_file_name,
    )
    output = OutputManager(paths.log_path, silent=silent, on_log=on_log)

    tracer = runtime.tracer
    trace = await tracer.start_trace(
        "deep-research",
        {"query": options.query, "breadth": breadth, "depth": depth, "output_dir": str(output_dir)},
    )

    output.log("=== Deep Research Started ===")
    output.log(f"Query: {options.query}")
    output.log(f"Parameters: Breadth={breadth}, Depth={depth}")
    output.log(f"Trace ID: {trace.trace_id}")

    status = "failed"
    try:
        result = await runtime.engine.research(
            options.query,
            breadth=breadth,
            depth=depth,
            on_progress=on_progress,
            trace=trace,
            output=output,
        )
        output.log(
            f"\nResearch completed with {len(result.learnings)} learnings and {len(result.visited_urls)} visited URLs"
        )

        output.log("\nWriting final report...")
        report = await runtime.report_writer.write_final_report(options.query, result.learnings, result.visited_urls, trace)
        write_text_artifact(paths.report_path, report)
        output.log(f"Final report saved to {paths.report_path}")

        answer: str | None = None
        if options.answer:
            output.log("\nWriting final answer...")
            answer = await runtime.report_writer.write_final_answer(options.query, result.learnings, trace)
            output.log(f"Final answer: {answer}")

        action_plan: ActionPlan | None = None
        try:
            output.log("\nGenerating action plan...")
            action_plan = await runtime.report_writer.write_action_plan(
                options.query,
                actionable_ideas=result.learnings[:ACTIONABLE_IDEAS_COUNT],
                implementation_considerations=result.learnings[
                    ACTIONABLE_IDEAS_COUNT : ACTIONABLE_IDEAS_COUNT + CONSIDERATIONS_COUNT
                ],
                visited_urls=result.visited_urls,
                trace=trace,
            )
            write_json_artifact(paths.action_plan_path, action_plan.model_dump())
            output.log(f"Action plan saved to {paths.action_plan_path}")
        except Exception as e:
            logger.warning(f"Action plan generation failed: {e}")
            output.log(f"Error generating action plan: {e}")
            action_plan = None

        status = "completed"
        return ResearchOutcome(
            query=options.query,
            learnings=result.learnings,
            visited_urls=result.visited_urls,
            report=report,
            answer=answer,
            action_plan=action_plan,
            report_path=str(paths.report_path),
            log_path=str(paths.log_path),
            action_plan_path=str(paths.action_plan_path) if action_plan else None,
            trace_id=trace.trace_id,
        )
    except Exception as e:
        output.log("\n=== Error in Research Process ===")
        output.log(f"{type(e).__name__}: {e}")
        raise
    finally:
        await tracer.end_trace(trace, status)

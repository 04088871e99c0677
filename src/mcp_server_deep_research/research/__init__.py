"""Recursive deep research: planning, fetching, extraction and reporting."""

from .engine import EngineConfig, ResearchEngine
from .extractor import LearningExtractor
from .feedback import generate_needed_information
from .fetcher import FirecrawlFetcher
from .jobs import JobManager, ResearchJob
from .models import (
    ActionPlan,
    GoalQuery,
    PlainQuery,
    ResearchOptions,
    ResearchOutcome,
    ResearchProgress,
    ResearchQuery,
    ResearchResult,
    ResearchStage,
)
from .planner import QueryPlanner
from .progress import ProgressRelay, ProgressTracker
from .report import ReportWriter
from .service import ResearchRuntime, research_runtime, run_research

__all__ = [
    "ActionPlan",
    "EngineConfig",
    "FirecrawlFetcher",
    "GoalQuery",
    "JobManager",
    "LearningExtractor",
    "PlainQuery",
    "ProgressRelay",
    "ProgressTracker",
    "QueryPlanner",
    "ReportWriter",
    "ResearchEngine",
    "ResearchJob",
    "ResearchOptions",
    "ResearchOutcome",
    "ResearchProgress",
    "ResearchQuery",
    "ResearchResult",
    "ResearchRuntime",
    "ResearchStage",
    "generate_needed_information",
    "research_runtime",
    "run_research",
]

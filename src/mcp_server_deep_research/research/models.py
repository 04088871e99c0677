"""Data models for deep research tasks."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


def unique_strings(*groups: Iterable[str | None]) -> list[str]:
    """Union string groups in first-seen order, dropping None and empty values."""
    return list(dict.fromkeys(item for group in groups for item in group if item))


# --- Planner / extractor schemas ---


class ResearchQuery(BaseModel):
    """A search sub-query planned for one branch of the research tree."""

    model_config = ConfigDict(frozen=True)

    query: str = Field(description="The SERP query")
    research_goal: str = Field(
        description="The goal of the research that this query is meant to accomplish, focusing on practical implementation.",
    )


class PlannedQueries(BaseModel):
    """Structured planner output."""

    queries: list[ResearchQuery] = Field(default_factory=list, description="List of SERP queries")


class ExtractionResult(BaseModel):
    """Learnings and follow-up questions extracted from fetched contents."""

    learnings: list[str] = Field(default_factory=list, description="List of concise, information-dense learnings")
    follow_up_questions: list[str] = Field(
        default_factory=list,
        description="List of follow-up questions to research the topic further",
    )


# --- Content fetcher ---


class SearchItem(BaseModel):
    """One search hit, optionally scraped to markdown."""

    url: str | None = None
    title: str | None = None
    markdown: str | None = None


class SearchResponse(BaseModel):
    """Results of one search call."""

    items: list[SearchItem] = Field(default_factory=list)

    @property
    def urls(self) -> list[str]:
        return unique_strings(item.url for item in self.items)

    @property
    def contents(self) -> list[str]:
        return [item.markdown for item in self.items if item.markdown]


# --- Progress ---


class PlainQuery(BaseModel):
    """Current query given only as free text."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["plain"] = "plain"
    text: str

    @property
    def goal(self) -> str:
        return self.text


class GoalQuery(BaseModel):
    """Current query given as a planned sub-query with its research goal."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["goal"] = "goal"
    query: str
    research_goal: str = ""

    @property
    def goal(self) -> str:
        return self.research_goal or self.query

    @classmethod
    def from_research_query(cls, research_query: ResearchQuery) -> "GoalQuery":
        return cls(query=research_query.query, research_goal=research_query.research_goal)


CurrentQuery = Annotated[PlainQuery | GoalQuery, Field(discriminator="kind")]


class ResearchStage(str, Enum):
    """Stages reported while a research tree is running."""

    NOT_STARTED = "not-started"
    PLANNING = "planning"
    FANNING_OUT = "fanning-out"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    RECURSING = "recursing"
    TERMINAL = "terminal"
    MERGING = "merging"
    DONE = "done"


class ResearchProgress(BaseModel):
    """Progress snapshot published to progress sinks."""

    current_depth: int = Field(default=0, ge=0)
    total_depth: int = Field(default=0, ge=0)
    current_breadth: int = Field(default=0, ge=0)
    total_breadth: int = Field(default=0, ge=0)
    total_queries: int = Field(default=0, ge=0)
    completed_queries: int = Field(default=0, ge=0)
    current_query: CurrentQuery | None = None
    stage: ResearchStage = ResearchStage.NOT_STARTED

    @property
    def research_goal(self) -> str | None:
        """Goal text of the query currently in flight."""
        return self.current_query.goal if self.current_query else None


# --- Results ---


@dataclass
class ResearchResult:
    """Deduplicated learnings and source URLs gathered by a research tree."""

    learnings: list[str] = field(default_factory=list)
    visited_urls: list[str] = field(default_factory=list)
    query: str = ""

    @classmethod
    def merge(
        cls,
        results: Iterable["ResearchResult"],
        query: str,
        learnings: Iterable[str] = (),
        visited_urls: Iterable[str] = (),
    ) -> "ResearchResult":
        """Union results (and optional seed values) in first-seen order."""
        results = list(results)
        return cls(
            learnings=unique_strings(learnings, *(r.learnings for r in results)),
            visited_urls=unique_strings(visited_urls, *(r.visited_urls for r in results)),
            query=query,
        )


class FinalReport(BaseModel):
    report_markdown: str = Field(description="Final report on the topic in Markdown")


class FinalAnswer(BaseModel):
    exact_answer: str = Field(description="The final answer, make it short and concise, just the answer, no other text")


class ActionPlanDraft(BaseModel):
    """Action plan fields produced by the model."""

    title: str
    steps: list[str] = Field(default_factory=list)
    considerations: list[str] = Field(default_factory=list)


class ActionPlanResponse(BaseModel):
    action_plan: ActionPlanDraft = Field(description="Action plan with actionable steps and considerations")


class ActionPlan(ActionPlanDraft):
    """Action plan with the research sources attached."""

    sources: list[str] = Field(default_factory=list)


class RequiredInformation(BaseModel):
    detail: str
    rationale: str


class NeededInformation(BaseModel):
    required_information: list[RequiredInformation] = Field(default_factory=list)


# --- End-to-end job ---


class ResearchOptions(BaseModel):
    """Options for one end-to-end research run."""

    query: str = Field(min_length=1)
    breadth: int | None = Field(default=None, ge=0)
    depth: int | None = Field(default=None, ge=0)
    output_dir: str | None = None
    log_file_name: str | None = None
    report_file_name: str | None = None
    action_plan_file_name: str | None = None
    answer: bool = Field(default=False, description="Also write a concise final answer to the query")


class ResearchOutcome(BaseModel):
    """Everything a finished research run produced."""

    query: str
    learnings: list[str] = Field(default_factory=list)
    visited_urls: list[str] = Field(default_factory=list)
    report: str | None = None
    answer: str | None = None
    action_plan: ActionPlan | None = None
    report_path: str | None = None
    log_path: str | None = None
    action_plan_path: str | None = None
    trace_id: str | None = None

"""Final report, final answer and action plan writers."""

import logging
from typing import TYPE_CHECKING

from ..observability.tracing import TraceContext, Tracer
from ..text import trim_prompt
from .generation import generate_object
from .models import ActionPlan, ActionPlanResponse, FinalAnswer, FinalReport
from .prompts import get_action_plan_prompt, get_answer_prompt, get_report_prompt

if TYPE_CHECKING:
    from browser_use.llm.base import BaseChatModel

logger = logging.getLogger(__name__)

LEARNINGS_TOKEN_LIMIT = 150_000


def format_learnings(learnings: list[str], token_limit: int = LEARNINGS_TOKEN_LIMIT) -> str:
    """Wrap each learning in a tag and trim the block to ``token_limit``."""
    return trim_prompt("\n".join(f"<learning>\n{learning}\n</learning>" for learning in learnings), token_limit)


def format_sources(visited_urls: list[str]) -> str:
    return "\n\n## Sources\n\n" + "\n".join(f"- {url}" for url in visited_urls)


class ReportWriter:
    """Single-shot model calls that turn research results into deliverables."""

    def __init__(self, llm: "BaseChatModel", tracer: Tracer | None = None, timeout: float | None = None):
        self.llm = llm
        self.tracer = tracer
        self.timeout = timeout

    async def write_final_report(
        self,
        prompt: str,
        learnings: list[str],
        visited_urls: list[str],
        trace: TraceContext | None = None,
    ) -> str:
        """Write a Markdown report and append the list of sources."""
        report = await generate_object(
            self.llm,
            prompt=get_report_prompt(prompt, format_learnings(learnings)),
            output_format=FinalReport,
            operation="write_final_report",
            timeout=self.timeout,
            tracer=self.tracer,
            trace=trace,
            metadata={"learnings": len(learnings), "sources": len(visited_urls)},
        )
        return report.report_markdown + format_sources(visited_urls)

    async def write_final_answer(self, prompt: str, learnings: list[str], trace: TraceContext | None = None) -> str:
        answer = await generate_object(
            self.llm,
            prompt=get_answer_prompt(prompt, format_learnings(learnings)),
            output_format=FinalAnswer,
            operation="write_final_answer",
            timeout=self.timeout,
            tracer=self.tracer,
            trace=trace,
        )
        return answer.exact_answer

    async def write_action_plan(
        self,
        prompt: str,
        actionable_ideas: list[str],
        implementation_considerations: list[str],
        visited_urls: list[str],
        trace: TraceContext | None = None,
    ) -> ActionPlan:
        response = await generate_object(
            self.llm,
            prompt=get_action_plan_prompt(prompt, actionable_ideas, implementation_considerations),
            output_format=ActionPlanResponse,
            operation="write_action_plan",
            timeout=self.timeout,
            tracer=self.tracer,
            trace=trace,
            metadata={"ideas": len(actionable_ideas), "considerations": len(implementation_considerations)},
        )
        logger.info(f"Action plan '{response.action_plan.title}' has {len(response.action_plan.steps)} steps")
        return ActionPlan(**response.action_plan.model_dump(), sources=list(visited_urls))

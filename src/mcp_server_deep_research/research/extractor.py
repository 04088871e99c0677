"""Learning extractor: distills fetched page contents into learnings."""

import logging
from typing import TYPE_CHECKING

from ..observability.tracing import TraceContext, Tracer
from .generation import generate_object
from .models import ExtractionResult
from .prompts import get_extraction_prompt

if TYPE_CHECKING:
    from browser_use.llm.base import BaseChatModel

logger = logging.getLogger(__name__)


def _clean(items: list[str], limit: int) -> list[str]:
    return [item.strip() for item in items if item and item.strip()][: max(limit, 0)]


class LearningExtractor:
    """Extracts learnings and follow-up questions with one model call."""

    def __init__(self, llm: "BaseChatModel", tracer: Tracer | None = None, timeout: float | None = None):
        self.llm = llm
        self.tracer = tracer
        self.timeout = timeout

    async def extract(
        self,
        query: str,
        contents: list[str],
        num_learnings: int,
        num_follow_up_questions: int,
        trace: TraceContext | None = None,
    ) -> ExtractionResult:
        """Extract up to ``num_learnings`` learnings and ``num_follow_up_questions`` questions.

        Raises:
            GenerationError: The model call failed or its output was malformed.
        """
        extracted = await generate_object(
            self.llm,
            prompt=get_extraction_prompt(query, contents, num_learnings, num_follow_up_questions),
            output_format=ExtractionResult,
            operation="process_serp_result",
            timeout=self.timeout,
            tracer=self.tracer,
            trace=trace,
            metadata={"content_count": len(contents)},
        )
        result = ExtractionResult(
            learnings=_clean(extracted.learnings, num_learnings),
            follow_up_questions=_clean(extracted.follow_up_questions, num_follow_up_questions),
        )
        logger.info(f"Extracted {len(result.learnings)} learnings for '{query[:80]}'")
        return result

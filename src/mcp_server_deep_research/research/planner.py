"""Query planner: turns a topic into SERP sub-queries."""

import logging
from typing import TYPE_CHECKING

from ..observability.tracing import TraceContext, Tracer
from .generation import generate_object
from .models import PlannedQueries, ResearchQuery
from .prompts import get_planning_prompt

if TYPE_CHECKING:
    from browser_use.llm.base import BaseChatModel

logger = logging.getLogger(__name__)


class QueryPlanner:
    """Plans up to N {query, research_goal} pairs with one model call."""

    def __init__(self, llm: "BaseChatModel", tracer: Tracer | None = None, timeout: float | None = None):
        self.llm = llm
        self.tracer = tracer
        self.timeout = timeout

    async def plan(
        self,
        query: str,
        num_queries: int,
        prior_learnings: list[str] | None = None,
        trace: TraceContext | None = None,
    ) -> list[ResearchQuery]:
        """Return at most ``num_queries`` planned queries.

        Raises:
            GenerationError: The model call failed or its output was malformed.
        """
        if num_queries <= 0:
            return []

        planned = await generate_object(
            self.llm,
            prompt=get_planning_prompt(query, num_queries, prior_learnings),
            output_format=PlannedQueries,
            operation="generate_serp_queries",
            timeout=self.timeout,
            tracer=self.tracer,
            trace=trace,
            metadata={"num_queries": num_queries},
        )
        queries = [q for q in planned.queries if q.query.strip()][:num_queries]
        logger.info(f"Created {len(queries)} queries for '{query[:80]}'")
        return queries

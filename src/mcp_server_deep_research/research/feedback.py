"""Identify what information a request needs before research starts."""

from typing import TYPE_CHECKING

from ..observability.tracing import TraceContext, Tracer
from .generation import generate_object
from .models import NeededInformation, RequiredInformation
from .prompts import get_needed_information_prompt

if TYPE_CHECKING:
    from browser_use.llm.base import BaseChatModel


async def generate_needed_information(
    llm: "BaseChatModel",
    query: str,
    max_items: int = 5,
    tracer: Tracer | None = None,
    trace: TraceContext | None = None,
) -> list[RequiredInformation]:
    """List up to ``max_items`` pieces of information the user should gather, each with a rationale."""
    if max_items <= 0:
        return []
    needed = await generate_object(
        llm,
        prompt=get_needed_information_prompt(query, max_items),
        output_format=NeededInformation,
        operation="generate_needed_information",
        tracer=tracer,
        trace=trace,
    )
    return needed.required_information[:max_items]

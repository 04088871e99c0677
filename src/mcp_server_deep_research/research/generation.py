"""Schema-constrained LLM calls with timeouts, token accounting and tracing."""

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ValidationError

from ..exceptions import GenerationError
from ..observability.models import TokenUsage
from ..observability.tracing import TraceContext, Tracer
from ..text import count_tokens
from .prompts import get_system_prompt

if TYPE_CHECKING:
    from browser_use.llm.base import BaseChatModel

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


def _strip_code_fence(content: str) -> str:
    if "```json" in content:
        return content.split("```json")[1].split("```")[0].strip()
    if "```" in content:
        return content.split("```")[1].split("```")[0].strip()
    return content.strip()


def _coerce(completion: Any, output_format: type[T]) -> T:
    """Turn a provider completion into ``output_format``.

    Providers with native structured output already return the model; others
    return JSON text, possibly wrapped in a markdown code block.
    """
    if isinstance(completion, output_format):
        return completion
    try:
        if isinstance(completion, BaseModel):
            return output_format.model_validate(completion.model_dump())
        if isinstance(completion, dict):
            return output_format.model_validate(completion)
        if isinstance(completion, str):
            return output_format.model_validate_json(_strip_code_fence(completion))
    except (ValidationError, json.JSONDecodeError) as e:
        raise GenerationError(f"Model output does not match {output_format.__name__}: {e}") from e
    raise GenerationError(f"Unexpected completion type {type(completion).__name__} for {output_format.__name__}")


def _usage_from_response(response: Any, prompt: str, completion: BaseModel) -> TokenUsage:
    usage = getattr(response, "usage", None)
    prompt_tokens = getattr(usage, "prompt_tokens", None) if usage else None
    completion_tokens = getattr(usage, "completion_tokens", None) if usage else None
    if prompt_tokens is None or completion_tokens is None:
        # Provider did not report usage; estimate locally
        return TokenUsage(prompt_tokens=count_tokens(prompt), completion_tokens=count_tokens(completion.model_dump_json()))
    return TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)


async def generate_object(
    llm: "BaseChatModel",
    *,
    prompt: str,
    output_format: type[T],
    operation: str,
    system: str | None = None,
    timeout: float | None = None,
    tracer: Tracer | None = None,
    trace: TraceContext | None = None,
    metadata: dict[str, Any] | None = None,
) -> T:
    """Ask the model for an object of type ``output_format``.

    Args:
        llm: browser-use chat model
        prompt: User prompt
        output_format: Pydantic model the output must validate against
        operation: Name used for logs and the generation record
        system: System prompt (defaults to the date-stamped research prompt)
        timeout: Seconds before the call is abandoned
        tracer: Receives one generation record with token usage
        trace: Trace context the generation belongs to
        metadata: Extra fields stored with the generation record

    Raises:
        GenerationError: The call failed, timed out, or returned malformed output.
    """
    from browser_use.llm.messages import SystemMessage, UserMessage

    messages = [
        SystemMessage(content=system or get_system_prompt()),
        UserMessage(content=prompt),
    ]

    try:
        call = llm.ainvoke(messages, output_format=output_format)
        response = await asyncio.wait_for(call, timeout=timeout) if timeout else await call
    except TimeoutError as e:
        raise GenerationError(f"{operation} timed out after {timeout}s") from e
    except GenerationError:
        raise
    except Exception as e:
        raise GenerationError(f"{operation} failed: {e}") from e

    result = _coerce(response.completion, output_format)

    if tracer is not None and trace is not None:
        try:
            usage = _usage_from_response(response, prompt, result)
            model_name = str(getattr(llm, "model", "unknown"))
            logger.debug(f"{operation} used {usage.total_tokens} tokens ({model_name})")
            await tracer.record_generation(trace, operation, model_name, usage, metadata)
        except Exception as e:
            logger.warning(f"Could not record token usage for {operation}: {e}")

    return result

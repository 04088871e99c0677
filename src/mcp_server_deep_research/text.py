"""Token counting and context-window trimming for model prompts."""

from functools import lru_cache

import tiktoken
from langchain_text_splitters import RecursiveCharacterTextSplitter

# Shortest prefix returned when a prompt cannot be split any further
MIN_CHUNK_SIZE = 140
DEFAULT_CONTEXT_SIZE = 128_000
# Rough average used to turn a token overflow into a character budget
CHARS_PER_TOKEN = 3


@lru_cache(maxsize=1)
def _get_encoder() -> tiktoken.Encoding:
    return tiktoken.get_encoding("o200k_base")


def count_tokens(text: str) -> int:
    """Count o200k tokens in text (0 for empty input)."""
    if not text:
        return 0
    return len(_get_encoder().encode(text, disallowed_special=()))


def trim_prompt(prompt: str, context_size: int = DEFAULT_CONTEXT_SIZE) -> str:
    """Trim text so that it fits within ``context_size`` tokens.

    Text that already fits is returned unchanged, so trimming is idempotent.
    Longer text is cut at the first chunk produced by a recursive character
    splitter, which prefers paragraph, line and word boundaries over a hard
    cut. When the splitter cannot shorten the text, the text is hard-cut to
    the estimated character budget instead.

    Args:
        prompt: Text to trim
        context_size: Maximum number of tokens

    Returns:
        A prefix of ``prompt`` that fits the budget, or at least
        ``MIN_CHUNK_SIZE`` characters when the budget is tiny.
    """
    if not prompt:
        return ""

    while True:
        length = count_tokens(prompt)
        if length <= context_size:
            return prompt

        overflow_tokens = length - context_size
        chunk_size = len(prompt) - overflow_tokens * CHARS_PER_TOKEN
        if chunk_size < MIN_CHUNK_SIZE:
            return prompt[:MIN_CHUNK_SIZE]

        splitter = RecursiveCharacterTextSplitter(chunk_size=chunk_size, chunk_overlap=0)
        chunks = splitter.split_text(prompt)
        trimmed = chunks[0] if chunks else ""

        if not trimmed or len(trimmed) >= len(prompt):
            # Splitter made no progress: hard cut
            prompt = prompt[:chunk_size]
        else:
            prompt = trimmed

"""MCP server for recursive deep research."""

from .config import settings
from .exceptions import DeepResearchError, FetchError, FetchTimeoutError, GenerationError, LLMProviderError
from .providers import get_llm
from .research import ResearchEngine, ResearchResult, run_research
from .server import main, serve

__all__ = [
    "main",
    "serve",
    "settings",
    "get_llm",
    "ResearchEngine",
    "ResearchResult",
    "run_research",
    "DeepResearchError",
    "FetchError",
    "FetchTimeoutError",
    "GenerationError",
    "LLMProviderError",
]

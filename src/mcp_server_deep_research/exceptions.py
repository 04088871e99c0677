"""Custom exceptions for the deep research server."""


class DeepResearchError(Exception):
    """Base exception for deep research errors."""

    pass


class ConfigurationError(DeepResearchError):
    """Raised when required configuration is missing or invalid."""

    pass


class LLMProviderError(DeepResearchError):
    """Raised when LLM provider configuration is invalid."""

    pass


class GenerationError(DeepResearchError):
    """Raised when a model call fails or returns output that does not match the schema."""

    pass


class FetchError(DeepResearchError):
    """Raised when the search/scrape provider fails."""

    pass


class FetchTimeoutError(FetchError):
    """Raised when a search/scrape call exceeds its timeout."""

    pass

"""LLM provider factory using browser-use native chat models."""

from typing import TYPE_CHECKING

from browser_use import (
    ChatAnthropic,
    ChatAzureOpenAI,
    ChatGoogle,
    ChatGroq,
    ChatOllama,
    ChatOpenAI,
)

# These are available via direct import but not in __all__
from browser_use.llm.deepseek.chat import ChatDeepSeek
from browser_use.llm.openrouter.chat import ChatOpenRouter

from .config import NO_KEY_PROVIDERS, STANDARD_ENV_VAR_NAMES, LLMSettings
from .exceptions import LLMProviderError

if TYPE_CHECKING:
    from browser_use.llm.base import BaseChatModel


def get_llm(
    provider: str,
    model: str,
    api_key: str | None = None,
    base_url: str | None = None,
    **kwargs,
) -> "BaseChatModel":
    """Create LLM instance using browser-use native providers.

    Supported providers: openai, anthropic, google, azure_openai, groq,
    deepseek, ollama (no API key required) and openrouter.

    Args:
        provider: LLM provider name
        model: Model name/identifier
        api_key: API key for the provider (not required for ollama)
        base_url: Custom base URL for OpenAI-compatible APIs
        **kwargs: Provider-specific options:
            - azure_endpoint: Azure OpenAI endpoint URL
            - azure_api_version: Azure OpenAI API version (default: 2024-02-01)

    Returns:
        Configured BaseChatModel instance

    Raises:
        LLMProviderError: If provider is unsupported or API key is missing
    """
    requires_api_key = provider not in NO_KEY_PROVIDERS and not base_url
    if requires_api_key and not api_key:
        standard_var = STANDARD_ENV_VAR_NAMES.get(provider, "API key")
        if isinstance(standard_var, list):
            standard_var = standard_var[0]
        raise LLMProviderError(f"API key required for provider '{provider}'. Set {standard_var} or DEEP_RESEARCH_LLM_API_KEY environment variable.")

    try:
        match provider:
            case "openai":
                return ChatOpenAI(model=model, api_key=api_key, base_url=base_url)

            case "anthropic":
                return ChatAnthropic(model=model, api_key=api_key)

            case "google":
                return ChatGoogle(model=model, api_key=api_key)

            case "azure_openai":
                azure_endpoint = kwargs.get("azure_endpoint")
                azure_api_version = kwargs.get("azure_api_version") or "2024-02-01"
                if not azure_endpoint:
                    raise LLMProviderError("Azure OpenAI requires DEEP_RESEARCH_LLM_AZURE_ENDPOINT to be set.")
                return ChatAzureOpenAI(
                    model=model,
                    api_key=api_key,
                    azure_endpoint=azure_endpoint,
                    api_version=azure_api_version,
                )

            case "groq":
                return ChatGroq(model=model, api_key=api_key)

            case "deepseek":
                return ChatDeepSeek(model=model, api_key=api_key)

            case "ollama":
                return ChatOllama(model=model, host=base_url)

            case "openrouter":
                return ChatOpenRouter(model=model, api_key=api_key)

            case _:
                raise LLMProviderError(f"Unsupported provider: {provider}")

    except LLMProviderError:
        raise
    except Exception as e:
        raise LLMProviderError(f"Failed to initialize {provider} LLM: {e}") from e


def get_llm_from_settings(llm_settings: LLMSettings) -> "BaseChatModel":
    """Build the configured chat model from an LLMSettings section."""
    return get_llm(
        provider=llm_settings.provider,
        model=llm_settings.model_name,
        api_key=llm_settings.get_api_key_for_provider(),
        base_url=llm_settings.base_url,
        azure_endpoint=llm_settings.azure_endpoint,
        azure_api_version=llm_settings.azure_api_version,
    )

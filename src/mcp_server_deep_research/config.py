"""Configuration management using Pydantic settings with optional file persistence."""

import json
import logging
import os
from pathlib import Path
from typing import Any, ClassVar, Literal, Optional

from pydantic import Field, SecretStr
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, JsonConfigSettingsSource, PydanticBaseSettingsSource, SettingsConfigDict

logger = logging.getLogger(__name__)

# --- Paths ---

APP_NAME = "mcp-server-deep-research"


def get_config_dir() -> Path:
    """Get the configuration directory (e.g. ~/.config/mcp-server-deep-research)."""
    if os.name == "nt":
        base = Path(os.environ.get("APPDATA", Path.home() / ".config")).expanduser()
    else:
        base = Path("~/.config").expanduser()

    path = base / APP_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_default_results_dir() -> Path:
    """Get the default directory for research artifacts."""
    return Path("./results")


CONFIG_FILE = get_config_dir() / "config.json"


def save_config_file(config_data: dict[str, Any]) -> None:
    """Save settings to the JSON config file."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    CONFIG_FILE.write_text(json.dumps(config_data, indent=2), encoding="utf-8")


class ConfigFileSection(PydanticBaseSettingsSource):
    """Values for one settings section, read from its table in the JSON config file.

    An unreadable file is logged and ignored; keys the section does not
    define are dropped.
    """

    def __init__(self, settings_cls: type[BaseSettings], section: str):
        super().__init__(settings_cls)
        self.section = section
        try:
            data = JsonConfigSettingsSource(settings_cls, json_file=CONFIG_FILE)()
        except ValueError as e:
            logger.warning(f"Ignoring unreadable config file {CONFIG_FILE}: {e}")
            data = {}
        table = data.get(section)
        if not isinstance(table, dict):
            table = {}
        self.values = {key: value for key, value in table.items() if key in settings_cls.model_fields}

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self.values.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        return dict(self.values)


class _ConfigSection(BaseSettings):
    """Settings section backed by the environment and the JSON config file.

    Priority: init kwargs > environment variables > config file > defaults.
    """

    config_section: ClassVar[str]

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            ConfigFileSection(settings_cls, cls.config_section),
            file_secret_settings,
        )


# Standard environment variable names for API keys (industry convention)
# For providers with multiple common env var names, use a list (first match wins)
STANDARD_ENV_VAR_NAMES: dict[str, str | list[str]] = {
    "openai": ["OPENAI_API_KEY", "OPENAI_KEY"],
    "anthropic": "ANTHROPIC_API_KEY",
    "google": ["GEMINI_API_KEY", "GOOGLE_API_KEY"],  # GEMINI_API_KEY takes priority
    "azure_openai": "AZURE_OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

# Firecrawl keys follow the same lookup rules as LLM keys
FIRECRAWL_ENV_VAR_NAMES = ["FIRECRAWL_API_KEY", "FIRECRAWL_KEY"]

# Providers that don't require an API key
NO_KEY_PROVIDERS = frozenset({"ollama"})

ProviderType = Literal[
    "openai",
    "anthropic",
    "google",
    "azure_openai",
    "groq",
    "deepseek",
    "ollama",
    "openrouter",
]


def _first_env(names: str | list[str]) -> Optional[str]:
    if isinstance(names, str):
        names = [names]
    for var_name in names:
        value = os.environ.get(var_name)
        if value:
            return value
    return None


class LLMSettings(_ConfigSection):
    """LLM provider configuration."""

    model_config = SettingsConfigDict(env_prefix="DEEP_RESEARCH_LLM_")
    config_section: ClassVar[str] = "llm"

    provider: ProviderType = Field(default="openai")
    model_name: str = Field(default="o3-mini")
    api_key: Optional[SecretStr] = Field(default=None, description="Generic API key override (highest priority)")
    base_url: Optional[str] = Field(default=None, description="Custom base URL for OpenAI-compatible APIs")
    context_size: int = Field(default=128_000, description="Token budget used when trimming long prompts")

    # Azure OpenAI specific
    azure_endpoint: Optional[str] = Field(default=None, description="Azure OpenAI endpoint URL")
    azure_api_version: Optional[str] = Field(default="2024-02-01", description="Azure OpenAI API version")

    def get_api_key_for_provider(self) -> Optional[str]:
        """Resolve API key with priority: generic > standard > prefixed.

        Priority order:
        1. DEEP_RESEARCH_LLM_API_KEY (generic override, applies to any provider)
        2. <PROVIDER>_API_KEY (standard name, e.g., OPENAI_API_KEY, GEMINI_API_KEY)
        3. DEEP_RESEARCH_LLM_<PROVIDER>_API_KEY (prefixed fallback)

        Returns:
            The resolved API key or None if not found.
        """
        if self.api_key:
            return self.api_key.get_secret_value()

        standard_vars = STANDARD_ENV_VAR_NAMES.get(self.provider)
        if standard_vars:
            key = _first_env(standard_vars)
            if key:
                return key

        return os.environ.get(f"DEEP_RESEARCH_LLM_{self.provider.upper()}_API_KEY")

    def requires_api_key(self) -> bool:
        """Check if the current provider requires an API key."""
        return self.provider not in NO_KEY_PROVIDERS


class SearchSettings(_ConfigSection):
    """Firecrawl search/scrape configuration."""

    model_config = SettingsConfigDict(env_prefix="DEEP_RESEARCH_SEARCH_")
    config_section: ClassVar[str] = "search"

    api_key: Optional[SecretStr] = Field(default=None, description="Firecrawl API key override")
    base_url: str = Field(default="https://api.firecrawl.dev", description="Firecrawl API base URL (self-hosted instances supported)")
    result_limit: int = Field(default=5, description="Maximum search results fetched per sub-query")
    timeout: float = Field(default=15.0, description="Timeout per search call in seconds")

    def get_api_key(self) -> Optional[str]:
        """Resolve the Firecrawl key: explicit setting first, then FIRECRAWL_API_KEY / FIRECRAWL_KEY."""
        if self.api_key:
            return self.api_key.get_secret_value()
        return _first_env(FIRECRAWL_ENV_VAR_NAMES)


class ResearchSettings(_ConfigSection):
    """Deep research configuration."""

    model_config = SettingsConfigDict(env_prefix="DEEP_RESEARCH_RESEARCH_")
    config_section: ClassVar[str] = "research"

    default_breadth: int = Field(default=4, description="Sub-queries planned at the first level")
    default_depth: int = Field(default=2, description="Recursive expansion levels")
    concurrency_limit: int = Field(default=3, description="Concurrent branches per fan-out")
    extract_timeout: float = Field(default=60.0, description="Timeout for one learning extraction call in seconds")
    content_token_limit: int = Field(default=25_000, description="Token cap applied to each fetched document")
    results_dir: Optional[str] = Field(default=None, description="Directory for reports, action plans and logs")
    file_retention_hours: int = Field(default=24, description="How long finished jobs are kept in memory")
    job_timeout: float = Field(default=1800.0, description="Wall-clock limit for one API research job in seconds")


class TelemetrySettings(_ConfigSection):
    """Tracing configuration."""

    model_config = SettingsConfigDict(env_prefix="DEEP_RESEARCH_TELEMETRY_")
    config_section: ClassVar[str] = "telemetry"

    enabled: bool = Field(default=True)
    db_path: Optional[str] = Field(default=None, description="SQLite database for tasks and traces (default: config dir)")


TransportType = Literal["stdio", "streamable-http", "sse"]


class ServerSettings(_ConfigSection):
    """Server configuration."""

    model_config = SettingsConfigDict(env_prefix="DEEP_RESEARCH_SERVER_")
    config_section: ClassVar[str] = "server"

    logging_level: str = Field(default="INFO")
    transport: TransportType = Field(default="streamable-http", description="MCP transport: stdio, streamable-http, or sse")
    host: str = Field(default="127.0.0.1", description="Host for HTTP transports")
    port: int = Field(default=3000, description="Port for HTTP transports")


class AppSettings(BaseSettings):
    """Root application settings.

    Each section resolves environment variables, then its table in the
    JSON config file, then defaults.
    """

    model_config = SettingsConfigDict(env_prefix="DEEP_RESEARCH_", extra="ignore")

    llm: LLMSettings = Field(default_factory=LLMSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    research: ResearchSettings = Field(default_factory=ResearchSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    def save(self) -> Path:
        """Save current configuration to file (excluding secrets)."""
        data = self.model_dump(mode="json", exclude_none=True)
        for section in ("llm", "search"):
            if section in data and "api_key" in data[section]:
                del data[section]["api_key"]
        save_config_file(data)
        return CONFIG_FILE

    def get_results_dir(self) -> Path:
        """Get the results directory, creating if needed."""
        if self.research.results_dir:
            path = Path(self.research.results_dir).expanduser()
        else:
            path = get_default_results_dir()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_db_path(self) -> Path:
        """Get the SQLite path used by the task store."""
        if self.telemetry.db_path:
            return Path(self.telemetry.db_path).expanduser()
        return get_config_dir() / "tasks.db"


def load_settings() -> AppSettings:
    """Load settings: environment variables first, then the config file, then defaults."""
    return AppSettings()


settings = load_settings()

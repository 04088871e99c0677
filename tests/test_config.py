"""Tests for configuration and API key resolution."""

import json
import os

import pytest

from mcp_server_deep_research.config import (
    FIRECRAWL_ENV_VAR_NAMES,
    NO_KEY_PROVIDERS,
    STANDARD_ENV_VAR_NAMES,
    AppSettings,
    LLMSettings,
    ResearchSettings,
    SearchSettings,
    load_settings,
)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove API keys and DEEP_RESEARCH_ variables from the environment."""
    for var in list(os.environ.keys()):
        if "API_KEY" in var or var.startswith("DEEP_RESEARCH_") or var.startswith("FIRECRAWL_"):
            monkeypatch.delenv(var, raising=False)


class TestStandardEnvVarNames:
    """Test that standard env var names are correctly defined."""

    def test_all_providers_have_standard_names(self):
        """All providers that need keys should have standard names defined."""
        expected_providers = {
            "openai",
            "anthropic",
            "google",
            "azure_openai",
            "groq",
            "deepseek",
            "openrouter",
        }
        assert set(STANDARD_ENV_VAR_NAMES.keys()) == expected_providers

    def test_standard_names_format(self):
        """Standard names should follow PROVIDER_API_KEY format."""
        for provider, env_vars in STANDARD_ENV_VAR_NAMES.items():
            vars_to_check = env_vars if isinstance(env_vars, list) else [env_vars]
            for env_var in vars_to_check:
                assert env_var.endswith("_KEY"), f"{provider} env var {env_var} should end with _KEY"
                assert env_var.isupper(), f"{provider} env var {env_var} should be uppercase"

    def test_ollama_no_key(self):
        """Ollama should not require an API key."""
        assert "ollama" in NO_KEY_PROVIDERS


@pytest.mark.usefixtures("clean_env")
class TestApiKeyResolution:
    """Test API key resolution priority logic."""

    def test_generic_override_takes_priority(self, monkeypatch):
        """DEEP_RESEARCH_LLM_API_KEY should override all other sources."""
        monkeypatch.setenv("DEEP_RESEARCH_LLM_API_KEY", "generic-key")
        monkeypatch.setenv("OPENAI_API_KEY", "standard-key")
        monkeypatch.setenv("DEEP_RESEARCH_LLM_OPENAI_API_KEY", "prefixed-key")
        monkeypatch.setenv("DEEP_RESEARCH_LLM_PROVIDER", "openai")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() == "generic-key"

    def test_standard_name_over_prefixed(self, monkeypatch):
        """Standard env var should take priority over the prefixed one."""
        monkeypatch.setenv("OPENAI_API_KEY", "standard-key")
        monkeypatch.setenv("DEEP_RESEARCH_LLM_OPENAI_API_KEY", "prefixed-key")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() == "standard-key"

    def test_openai_key_alias(self, monkeypatch):
        """OPENAI_KEY is accepted when OPENAI_API_KEY is not set."""
        monkeypatch.setenv("OPENAI_KEY", "alias-key")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() == "alias-key"

    def test_prefixed_fallback(self, monkeypatch):
        """Prefixed variable is used when no standard name is set."""
        monkeypatch.setenv("DEEP_RESEARCH_LLM_OPENAI_API_KEY", "prefixed-key")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() == "prefixed-key"

    def test_gemini_key_over_google_key(self, monkeypatch):
        """GEMINI_API_KEY wins over GOOGLE_API_KEY."""
        monkeypatch.setenv("GEMINI_API_KEY", "gemini-key")
        monkeypatch.setenv("GOOGLE_API_KEY", "google-key")
        monkeypatch.setenv("DEEP_RESEARCH_LLM_PROVIDER", "google")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() == "gemini-key"

    def test_ollama_no_key_required(self, monkeypatch):
        """Ollama should work without any API key."""
        monkeypatch.setenv("DEEP_RESEARCH_LLM_PROVIDER", "ollama")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() is None
        assert not settings.requires_api_key()

    def test_no_key_returns_none(self):
        """Should return None when no key is set for a provider that needs one."""
        settings = LLMSettings()
        assert settings.get_api_key_for_provider() is None
        assert settings.requires_api_key()


@pytest.mark.usefixtures("clean_env")
class TestSearchSettings:
    """Test Firecrawl key and endpoint resolution."""

    def test_firecrawl_env_names(self):
        assert FIRECRAWL_ENV_VAR_NAMES == ["FIRECRAWL_API_KEY", "FIRECRAWL_KEY"]

    def test_firecrawl_key_from_standard_name(self, monkeypatch):
        monkeypatch.setenv("FIRECRAWL_KEY", "fc-key")
        assert SearchSettings().get_api_key() == "fc-key"

    def test_explicit_key_wins(self, monkeypatch):
        monkeypatch.setenv("FIRECRAWL_API_KEY", "fc-standard")
        monkeypatch.setenv("DEEP_RESEARCH_SEARCH_API_KEY", "fc-explicit")
        assert SearchSettings().get_api_key() == "fc-explicit"

    def test_self_hosted_base_url(self, monkeypatch):
        monkeypatch.setenv("DEEP_RESEARCH_SEARCH_BASE_URL", "http://localhost:3002")
        assert SearchSettings().base_url == "http://localhost:3002"


@pytest.mark.usefixtures("clean_env")
class TestDefaults:
    """Test default values for settings sections."""

    def test_llm_defaults(self):
        settings = LLMSettings()
        assert settings.provider == "openai"
        assert settings.model_name == "o3-mini"
        assert settings.azure_api_version == "2024-02-01"
        assert settings.azure_endpoint is None

    def test_research_defaults(self):
        settings = ResearchSettings()
        assert settings.default_breadth == 4
        assert settings.default_depth == 2
        assert settings.concurrency_limit == 3
        assert settings.extract_timeout == 60.0
        assert settings.content_token_limit == 25_000
        assert settings.file_retention_hours == 24

    def test_search_defaults(self):
        settings = SearchSettings()
        assert settings.base_url == "https://api.firecrawl.dev"
        assert settings.result_limit == 5
        assert settings.timeout == 15.0

    def test_research_env_override(self, monkeypatch):
        monkeypatch.setenv("DEEP_RESEARCH_RESEARCH_CONCURRENCY_LIMIT", "7")
        assert ResearchSettings().concurrency_limit == 7


@pytest.mark.usefixtures("clean_env")
class TestAppSettingsPaths:
    """Test directories derived from settings."""

    def test_results_dir_created(self, tmp_path):
        target = tmp_path / "out" / "results"
        settings = AppSettings(research=ResearchSettings(results_dir=str(target)))
        assert settings.get_results_dir() == target
        assert target.is_dir()

    def test_db_path_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DEEP_RESEARCH_TELEMETRY_DB_PATH", str(tmp_path / "tasks.db"))
        settings = AppSettings()
        assert settings.get_db_path() == tmp_path / "tasks.db"

    def test_provider_validation(self, monkeypatch):
        """Unknown providers are rejected."""
        monkeypatch.setenv("DEEP_RESEARCH_LLM_PROVIDER", "not-a-provider")
        with pytest.raises(ValueError):
            LLMSettings()


@pytest.mark.usefixtures("clean_env")
class TestConfigFile:
    """Test the JSON config file layer and its priority."""

    def test_file_values_applied(self, isolated_config_file):
        isolated_config_file.write_text(json.dumps({"research": {"default_breadth": 7}, "llm": {"model_name": "gpt-4o"}}))
        settings = load_settings()
        assert settings.research.default_breadth == 7
        assert settings.llm.model_name == "gpt-4o"
        assert settings.research.default_depth == 2

    def test_env_overrides_file(self, isolated_config_file, monkeypatch):
        """Environment variables win over the config file, which wins over defaults."""
        isolated_config_file.write_text(json.dumps({"research": {"default_breadth": 7, "default_depth": 4}}))
        monkeypatch.setenv("DEEP_RESEARCH_RESEARCH_DEFAULT_BREADTH", "2")

        settings = load_settings()
        assert settings.research.default_breadth == 2
        assert settings.research.default_depth == 4

    def test_explicit_values_override_env_and_file(self, isolated_config_file, monkeypatch):
        isolated_config_file.write_text(json.dumps({"research": {"concurrency_limit": 5}}))
        monkeypatch.setenv("DEEP_RESEARCH_RESEARCH_CONCURRENCY_LIMIT", "4")
        assert ResearchSettings(concurrency_limit=1).concurrency_limit == 1

    def test_unreadable_file_ignored(self, isolated_config_file):
        isolated_config_file.write_text("{not json")
        assert load_settings().research.default_breadth == 4

    def test_unknown_keys_ignored(self, isolated_config_file):
        isolated_config_file.write_text(json.dumps({"research": {"bogus": 1}, "llm": "not-a-table", "extra": {}}))
        settings = load_settings()
        assert settings.research.default_breadth == 4
        assert settings.llm.provider == "openai"

    def test_save_round_trip_without_secrets(self, isolated_config_file, monkeypatch):
        monkeypatch.setenv("DEEP_RESEARCH_LLM_API_KEY", "sk-secret")
        monkeypatch.setenv("DEEP_RESEARCH_SEARCH_API_KEY", "fc-secret")
        monkeypatch.setenv("DEEP_RESEARCH_RESEARCH_DEFAULT_DEPTH", "3")

        assert AppSettings().save() == isolated_config_file
        data = json.loads(isolated_config_file.read_text())
        assert "api_key" not in data["llm"]
        assert "api_key" not in data["search"]
        assert "secret" not in isolated_config_file.read_text()
        assert data["research"]["default_depth"] == 3

        monkeypatch.delenv("DEEP_RESEARCH_RESEARCH_DEFAULT_DEPTH")
        assert load_settings().research.default_depth == 3

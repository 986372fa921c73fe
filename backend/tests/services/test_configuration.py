"""Tests for ConfigurationManager and the provider catalogue."""

import pytest

from tests.conftest import FakeAdapter, make_config
from unified_chat import constants
from unified_chat.adapters.base import validate_provider_config
from unified_chat.adapters.claude import ClaudeAdapter
from unified_chat.adapters.cohere import CohereAdapter
from unified_chat.adapters.gemini import GeminiAdapter
from unified_chat.adapters.openai_compat import OpenAICompatibleAdapter
from unified_chat.config import Settings
from unified_chat.exceptions import ConfigurationError
from unified_chat.services.configuration import (
    ChatServiceConfig,
    ConfigurationManager,
    default_provider_configs,
)
from unified_chat.services.registry import ProviderRegistry


@pytest.fixture
def registry():
    return ProviderRegistry(health_checks_enabled=False)


@pytest.fixture
def manager(registry):
    return ConfigurationManager(registry)


class TestCatalogue:
    """Tests for the built-in provider catalogue."""

    def test_all_providers_present(self):
        configs = default_provider_configs()
        assert set(configs) == {
            "groq",
            "cerebras",
            "mistral",
            "openrouter",
            "gemini",
            "cohere",
            "claude",
        }

    def test_priorities_descend_in_catalogue_order(self):
        priorities = {name: c.priority for name, c in default_provider_configs().items()}
        assert priorities == {
            "groq": 10,
            "cerebras": 9,
            "mistral": 8,
            "openrouter": 7,
            "gemini": 6,
            "cohere": 5,
            "claude": 4,
        }

    def test_catalogue_entries_are_valid(self):
        for config in default_provider_configs().values():
            assert validate_provider_config(config) == []
            assert config.capabilities.supports_streaming is True

    def test_per_provider_timeouts(self):
        configs = default_provider_configs(default_timeout=30.0)
        assert configs["groq"].timeout == 30.0
        assert configs["cerebras"].timeout == 25.0
        assert configs["openrouter"].timeout == 35.0

    def test_fresh_copies(self):
        first = default_provider_configs()
        first["groq"].priority = 0
        assert default_provider_configs()["groq"].priority == 10


class TestValidation:
    """Tests for validate_provider_config."""

    def test_reports_every_problem(self):
        config = make_config("alpha", models={}, timeout=0, max_retries=0, base_url="")
        errors = validate_provider_config(config)

        assert "base_url is required" in errors
        assert "models.chat is required" in errors
        assert "timeout must be positive" in errors
        assert "max_retries must be at least 1" in errors

    def test_missing_capabilities(self):
        config = make_config("alpha")
        config.capabilities = None
        assert validate_provider_config(config) == ["capabilities are required"]


class TestConfigurationManager:
    """Tests for ConfigurationManager."""

    def test_defaults_loaded(self, manager):
        configs = manager.get_all_provider_configs()
        assert len(configs) == 7
        assert configs["groq"].max_retries == constants.DEFAULT_MAX_RETRIES

    def test_service_settings_flow_into_catalogue(self, registry):
        manager = ConfigurationManager(
            registry, service_config=ChatServiceConfig(timeout=12.0, max_retries=5)
        )

        groq = manager.get_provider_config("groq")
        assert groq.timeout == 12.0
        assert groq.max_retries == 5
        assert manager.get_provider_config("cerebras").timeout == 25.0

    def test_set_invalid_config_raises(self, manager):
        with pytest.raises(ConfigurationError) as exc_info:
            manager.set_provider_config(make_config("alpha", timeout=-1))

        assert exc_info.value.provider == "alpha"
        assert "timeout must be positive" in exc_info.value.errors
        assert manager.get_provider_config("alpha") is None

    def test_update_in_place_reaches_adapter(self, manager):
        """Test replacing a config mutates the object the adapter already holds."""
        adapter = manager.register_provider("groq")
        replacement = default_provider_configs()["groq"]
        replacement.priority = 42

        stored = manager.set_provider_config(replacement)

        assert stored is adapter.config
        assert adapter.config.priority == 42

    def test_enable_and_priority_visible_to_registry(self, manager, registry):
        manager.register_all_providers()

        manager.set_provider_enabled("groq", False)
        manager.set_provider_priority("claude", 99)

        assert registry.select_provider().provider_name == "claude"
        assert manager.set_provider_enabled("nope", True) is False
        assert manager.set_provider_priority("nope", 1) is False

    def test_reset_provider_config(self, manager):
        manager.set_provider_priority("groq", 1)
        manager.set_provider_enabled("groq", False)

        assert manager.reset_provider_config("groq") is True

        groq = manager.get_provider_config("groq")
        assert groq.priority == 10
        assert groq.enabled is True
        assert manager.reset_provider_config("custom") is False

    def test_register_all_builds_matching_adapters(self, manager, registry):
        registered = manager.register_all_providers()

        assert len(registered) == 7
        assert isinstance(registry.get_provider("groq"), OpenAICompatibleAdapter)
        assert isinstance(registry.get_provider("openrouter"), OpenAICompatibleAdapter)
        assert isinstance(registry.get_provider("cohere"), CohereAdapter)
        assert isinstance(registry.get_provider("gemini"), GeminiAdapter)
        assert isinstance(registry.get_provider("claude"), ClaudeAdapter)
        assert registry.get_provider("groq").config is manager.get_provider_config("groq")

    def test_register_all_continues_past_failures(self, registry):
        def broken(config, health_check_timeout):
            raise RuntimeError("cannot build")

        def working(config, health_check_timeout):
            return FakeAdapter(config)

        manager = ConfigurationManager(
            registry, adapter_factories={"groq": broken, "mistral": working}
        )

        assert manager.register_all_providers() == ["mistral"]
        assert registry.has_provider("mistral")
        assert not registry.has_provider("groq")

    def test_custom_provider(self, registry):
        manager = ConfigurationManager(
            registry,
            provider_configs={"alpha": make_config("alpha")},
            adapter_factories={"alpha": lambda config, timeout: FakeAdapter(config)},
        )

        adapter = manager.register_provider("alpha")

        assert registry.get_provider("alpha") is adapter
        with pytest.raises(ValueError, match="No configuration"):
            manager.create_adapter("groq")

    def test_credential_status_never_exposes_value(self, manager, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "gsk-secret-value-123")

        status = manager.check_api_key_availability("groq")

        assert status.available is True
        assert status.environment_variable == "GROQ_API_KEY"
        assert "gsk-secret" not in repr(status)

    def test_environment_status(self, manager, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "gsk-secret-value-123")

        env = manager.get_environment_status()

        assert env.available_credentials == ["GROQ_API_KEY"]
        assert "ANTHROPIC_API_KEY" in env.missing_credentials
        assert env.providers["claude"].error == "ANTHROPIC_API_KEY is not set"

    def test_unknown_provider_credential_status(self, manager):
        status = manager.check_api_key_availability("nope")
        assert status.available is False
        assert "Unknown provider" in status.error

    def test_update_service_config(self, manager, registry):
        updated = manager.update_service_config(
            default_provider="claude", retry_delay=0.5, health_check_interval=5.0
        )

        assert updated.retry_delay == 0.5
        assert manager.service_config.retry_delay == 0.5
        assert registry.default_provider == "claude"
        assert registry.health_check_interval == 5.0
        with pytest.raises(ValueError, match="Unknown service config fields"):
            manager.update_service_config(colour="red")

    def test_get_service_config_is_a_copy(self, manager):
        copy = manager.get_service_config()
        copy.fallback_providers.clear()

        assert manager.service_config.fallback_providers == constants.DEFAULT_FALLBACK_PROVIDERS


class TestChatServiceConfig:
    """Tests for ChatServiceConfig.from_settings."""

    def test_from_settings(self):
        settings = Settings(
            _env_file=None,
            default_provider="mistral",
            fallback_providers="gemini, claude",
            retry_delay=0.25,
        )

        config = ChatServiceConfig.from_settings(settings)

        assert config.default_provider == "mistral"
        assert config.fallback_providers == ["gemini", "claude"]
        assert config.retry_delay == 0.25
        assert config.metrics_max_entries == 1000

"""
Provider and service configuration.

The ConfigurationManager owns one ProviderConfig per known provider. Adapters
registered through it receive that same object, so enable/disable and
priority changes are visible to the registry immediately.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields, replace
from typing import Any

from unified_chat import constants
from unified_chat.adapters.base import (
    ProviderAdapter,
    ProviderCapabilities,
    ProviderConfig,
    ProviderStatus,
    validate_provider_config,
)
from unified_chat.adapters.claude import ClaudeAdapter
from unified_chat.adapters.cohere import CohereAdapter
from unified_chat.adapters.gemini import GeminiAdapter
from unified_chat.adapters.openai_compat import OpenAICompatibleAdapter
from unified_chat.config import Settings, get_credential
from unified_chat.exceptions import ConfigurationError
from unified_chat.services.registry import ProviderRegistry

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[ProviderConfig, float], ProviderAdapter]


def default_provider_configs(
    default_timeout: float = constants.DEFAULT_TIMEOUT_SECONDS,
) -> dict[str, ProviderConfig]:
    """Fresh copies of the built-in provider catalogue.

    ``default_timeout`` applies to providers without their own timeout.
    """

    def _config(
        provider: str,
        name: str,
        model: str,
        priority: int,
        capabilities: ProviderCapabilities,
        timeout: float | None = None,
    ) -> ProviderConfig:
        return ProviderConfig(
            provider=provider,
            name=name,
            api_key_env=constants.API_KEY_ENV[provider],
            base_url=constants.BASE_URLS[provider],
            models={"chat": model},
            capabilities=capabilities,
            timeout=timeout or default_timeout,
            priority=priority,
        )

    return {
        constants.GROQ: _config(
            constants.GROQ,
            "Groq",
            constants.GROQ_LLAMA,
            priority=10,
            capabilities=ProviderCapabilities(
                supports_streaming=True, requests_per_minute=30, tokens_per_minute=6000
            ),
        ),
        constants.CEREBRAS: _config(
            constants.CEREBRAS,
            "Cerebras",
            constants.CEREBRAS_LLAMA,
            priority=9,
            timeout=25.0,
            capabilities=ProviderCapabilities(supports_streaming=True, requests_per_minute=30),
        ),
        constants.MISTRAL: _config(
            constants.MISTRAL,
            "Mistral",
            constants.MISTRAL_SMALL,
            priority=8,
            capabilities=ProviderCapabilities(supports_streaming=True),
        ),
        constants.OPENROUTER: _config(
            constants.OPENROUTER,
            "OpenRouter",
            constants.OPENROUTER_DEFAULT,
            priority=7,
            timeout=35.0,
            capabilities=ProviderCapabilities(
                supports_streaming=True, supports_function_calling=True
            ),
        ),
        constants.GEMINI: _config(
            constants.GEMINI,
            "Google Gemini",
            constants.GEMINI_FLASH_LITE,
            priority=6,
            capabilities=ProviderCapabilities(
                supports_streaming=True,
                supports_image_input=True,
                message_format="google",
                requests_per_minute=15,
            ),
        ),
        constants.COHERE: _config(
            constants.COHERE,
            "Cohere",
            constants.COHERE_COMMAND,
            priority=5,
            capabilities=ProviderCapabilities(supports_streaming=True, message_format="cohere"),
        ),
        constants.CLAUDE: _config(
            constants.CLAUDE,
            "Anthropic Claude",
            constants.CLAUDE_HAIKU,
            priority=4,
            capabilities=ProviderCapabilities(
                supports_streaming=True,
                supports_image_input=True,
                message_format="anthropic",
            ),
        ),
    }


def _openai_compatible(config: ProviderConfig, health_check_timeout: float) -> ProviderAdapter:
    return OpenAICompatibleAdapter(config, health_check_timeout=health_check_timeout)


def _cohere(config: ProviderConfig, health_check_timeout: float) -> ProviderAdapter:
    return CohereAdapter(config, health_check_timeout=health_check_timeout)


def _gemini(config: ProviderConfig, health_check_timeout: float) -> ProviderAdapter:
    return GeminiAdapter(config, health_check_timeout=health_check_timeout)


def _claude(config: ProviderConfig, health_check_timeout: float) -> ProviderAdapter:
    return ClaudeAdapter(config, health_check_timeout=health_check_timeout)


DEFAULT_ADAPTER_FACTORIES: dict[str, AdapterFactory] = {
    **{name: _openai_compatible for name in constants.OPENAI_COMPATIBLE_PROVIDERS},
    constants.COHERE: _cohere,
    constants.GEMINI: _gemini,
    constants.CLAUDE: _claude,
}


@dataclass
class ChatServiceConfig:
    """Service-wide defaults consumed by the chat service and registry."""

    default_provider: str = constants.DEFAULT_PROVIDER
    fallback_providers: list[str] = field(
        default_factory=lambda: list(constants.DEFAULT_FALLBACK_PROVIDERS)
    )
    timeout: float = constants.DEFAULT_TIMEOUT_SECONDS
    max_retries: int = constants.DEFAULT_MAX_RETRIES
    retry_delay: float = constants.DEFAULT_RETRY_DELAY_SECONDS
    enable_health_checks: bool = True
    health_check_interval: float = constants.HEALTH_CHECK_INTERVAL_SECONDS
    health_check_timeout: float = constants.HEALTH_CHECK_TIMEOUT_SECONDS
    session_timeout: float = constants.SESSION_TIMEOUT_SECONDS
    session_cleanup_interval: float = constants.SESSION_CLEANUP_INTERVAL_SECONDS
    metrics_max_entries: int = constants.METRICS_MAX_ENTRIES
    metrics_trim_to: int = constants.METRICS_TRIM_TO
    metrics_retention: float = constants.METRICS_RETENTION_SECONDS
    metrics_prune_interval: float = constants.METRICS_PRUNE_INTERVAL_SECONDS

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChatServiceConfig":
        return cls(
            default_provider=settings.default_provider,
            fallback_providers=settings.fallback_provider_list,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
            enable_health_checks=settings.health_check_enabled,
            health_check_interval=settings.health_check_interval,
            health_check_timeout=settings.health_check_timeout,
            session_timeout=settings.session_timeout,
            session_cleanup_interval=settings.session_cleanup_interval,
            metrics_max_entries=settings.metrics_max_entries,
            metrics_trim_to=settings.metrics_trim_to,
            metrics_retention=settings.metrics_retention,
            metrics_prune_interval=settings.metrics_prune_interval,
        )


@dataclass
class CredentialStatus:
    """Whether a provider's credential is present. Never carries the value."""

    provider: str
    environment_variable: str
    available: bool
    error: str | None = None


@dataclass
class EnvironmentStatus:
    providers: dict[str, CredentialStatus]
    available_credentials: list[str]
    missing_credentials: list[str]


class ConfigurationManager:
    """Authoritative provider configs plus service defaults."""

    def __init__(
        self,
        registry: ProviderRegistry,
        service_config: ChatServiceConfig | None = None,
        adapter_factories: Mapping[str, AdapterFactory] | None = None,
        provider_configs: Mapping[str, ProviderConfig] | None = None,
    ):
        self.registry = registry
        self._service_config = service_config or ChatServiceConfig()
        self._factories: dict[str, AdapterFactory] = dict(
            DEFAULT_ADAPTER_FACTORIES if adapter_factories is None else adapter_factories
        )
        self._configs: dict[str, ProviderConfig] = {}
        if provider_configs is None:
            provider_configs = default_provider_configs(self._service_config.timeout)
            # Catalogue entries take the global retry count
            for config in provider_configs.values():
                config.max_retries = self._service_config.max_retries
        for config in provider_configs.values():
            self.set_provider_config(config)

    # ------------------------------------------------------------------
    # Provider configs
    # ------------------------------------------------------------------

    def set_provider_config(self, config: ProviderConfig) -> ProviderConfig:
        """Validate and store a config.

        An existing config for the same provider is updated in place so that
        adapters already holding it see the change.

        Raises:
            ConfigurationError: The config failed validation
        """
        errors = validate_provider_config(config)
        if errors:
            logger.error(f"Rejected config for {config.provider or '<unnamed>'}: {errors}")
            raise ConfigurationError(config.provider or "<unnamed>", errors)

        existing = self._configs.get(config.provider)
        if existing is None or existing is config:
            self._configs[config.provider] = config
            return config

        for f in fields(ProviderConfig):
            value = getattr(config, f.name)
            setattr(existing, f.name, dict(value) if isinstance(value, dict) else value)
        logger.info(f"Updated provider config for {config.provider}")
        return existing

    def get_provider_config(self, provider: str) -> ProviderConfig | None:
        return self._configs.get(provider)

    def get_all_provider_configs(self) -> dict[str, ProviderConfig]:
        return dict(self._configs)

    def set_provider_enabled(self, provider: str, enabled: bool) -> bool:
        config = self._configs.get(provider)
        if config is None:
            return False
        config.enabled = enabled
        logger.info(f"Provider {provider} {'enabled' if enabled else 'disabled'}")
        return True

    def set_provider_priority(self, provider: str, priority: int) -> bool:
        config = self._configs.get(provider)
        if config is None:
            return False
        config.priority = priority
        logger.info(f"Provider {provider} priority set to {priority}")
        return True

    def reset_provider_config(self, provider: str) -> bool:
        """Restore a catalogue provider to its built-in defaults."""
        default = default_provider_configs(self._service_config.timeout).get(provider)
        if default is None:
            return False
        default.max_retries = self._service_config.max_retries
        self.set_provider_config(default)
        return True

    # ------------------------------------------------------------------
    # Service config
    # ------------------------------------------------------------------

    def get_service_config(self) -> ChatServiceConfig:
        """A copy; use update_service_config to change values."""
        config = self._service_config
        return replace(config, fallback_providers=list(config.fallback_providers))

    def update_service_config(self, **changes: Any) -> ChatServiceConfig:
        valid = {f.name for f in fields(ChatServiceConfig)}
        unknown = set(changes) - valid
        if unknown:
            raise ValueError(f"Unknown service config fields: {sorted(unknown)}")
        for key, value in changes.items():
            setattr(self._service_config, key, value)
        if "default_provider" in changes:
            self.registry.default_provider = changes["default_provider"]
        if "health_check_interval" in changes:
            self.registry.health_check_interval = changes["health_check_interval"]
        logger.info(f"Updated service config: {sorted(changes)}")
        return self.get_service_config()

    @property
    def service_config(self) -> ChatServiceConfig:
        """The live object shared with the chat service."""
        return self._service_config

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def check_api_key_availability(self, provider: str) -> CredentialStatus:
        config = self._configs.get(provider)
        if config is None:
            return CredentialStatus(
                provider=provider,
                environment_variable="",
                available=False,
                error=f"Unknown provider: {provider}",
            )
        available = get_credential(config.api_key_env) is not None
        return CredentialStatus(
            provider=provider,
            environment_variable=config.api_key_env,
            available=available,
            error=None if available else f"{config.api_key_env} is not set",
        )

    def get_environment_status(self) -> EnvironmentStatus:
        providers = {name: self.check_api_key_availability(name) for name in self._configs}
        return EnvironmentStatus(
            providers=providers,
            available_credentials=[
                status.environment_variable for status in providers.values() if status.available
            ],
            missing_credentials=[
                status.environment_variable
                for status in providers.values()
                if not status.available
            ],
        )

    # ------------------------------------------------------------------
    # Registry integration
    # ------------------------------------------------------------------

    def create_adapter(self, provider: str) -> ProviderAdapter:
        config = self._configs.get(provider)
        if config is None:
            raise ValueError(f"No configuration for provider {provider}")
        factory = self._factories.get(provider)
        if factory is None:
            raise ValueError(f"No adapter factory for provider {provider}")
        return factory(config, self._service_config.health_check_timeout)

    def register_provider(self, provider: str) -> ProviderAdapter:
        adapter = self.create_adapter(provider)
        self.registry.register_provider(adapter)
        return adapter

    def register_all_providers(self) -> list[str]:
        """Register an adapter for every configured provider with a factory."""
        registered: list[str] = []
        for provider in self._configs:
            if provider not in self._factories:
                logger.warning(f"No adapter factory for {provider}, skipping")
                continue
            try:
                self.register_provider(provider)
            except Exception as e:
                logger.error(f"Failed to register provider {provider}: {e}")
                continue
            registered.append(provider)
        logger.info(f"Registered {len(registered)} providers: {', '.join(registered)}")
        return registered

    def get_provider_statuses(self) -> dict[str, ProviderStatus]:
        return self.registry.get_health_status()

    def get_provider_statistics(self) -> dict[str, Any]:
        return self.registry.get_provider_statistics()

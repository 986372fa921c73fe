"""
Configuration management using pydantic-settings.
Loads from environment variables (prefix CHAT_) and ~/.env.local
"""

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from unified_chat import constants


class Settings(BaseSettings):
    """Service settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="CHAT_",
        env_file=str(Path.home() / ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"

    # Routing
    default_provider: str = constants.DEFAULT_PROVIDER
    fallback_providers: str = ",".join(constants.DEFAULT_FALLBACK_PROVIDERS)

    # Requests
    request_timeout: float = Field(default=constants.DEFAULT_TIMEOUT_SECONDS, gt=0)
    max_retries: int = Field(default=constants.DEFAULT_MAX_RETRIES, ge=1)
    retry_delay: float = Field(default=constants.DEFAULT_RETRY_DELAY_SECONDS, ge=0)

    # Health checks
    health_check_enabled: bool = True
    health_check_interval: float = Field(
        default=constants.HEALTH_CHECK_INTERVAL_SECONDS, gt=0
    )
    health_check_timeout: float = Field(default=constants.HEALTH_CHECK_TIMEOUT_SECONDS, gt=0)

    # Sessions
    session_timeout: float = Field(default=constants.SESSION_TIMEOUT_SECONDS, gt=0)
    session_cleanup_interval: float = Field(
        default=constants.SESSION_CLEANUP_INTERVAL_SECONDS, gt=0
    )

    # Metrics
    metrics_max_entries: int = Field(default=constants.METRICS_MAX_ENTRIES, gt=0)
    metrics_trim_to: int = Field(default=constants.METRICS_TRIM_TO, gt=0)
    metrics_retention: float = Field(default=constants.METRICS_RETENTION_SECONDS, gt=0)
    metrics_prune_interval: float = Field(
        default=constants.METRICS_PRUNE_INTERVAL_SECONDS, gt=0
    )

    # Telemetry
    otel_console_export: bool = False
    otel_exporter_otlp_endpoint: str = ""

    @property
    def fallback_provider_list(self) -> list[str]:
        """Fallback order as a list (comma-separated in the environment)."""
        return [name.strip() for name in self.fallback_providers.split(",") if name.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def get_credential(env_key: str) -> str | None:
    """Look up a provider credential by its environment key.

    Read at call time so rotated keys are picked up without a restart.
    """
    value = os.environ.get(env_key, "").strip()
    return value or None

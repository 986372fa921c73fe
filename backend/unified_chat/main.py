"""
unified-chat bootstrap.

Builds the object graph (configuration manager, registry, chat service) from
Settings. Nothing here is a process-wide singleton; each call to
create_chat_system() returns an independent system.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from types import TracebackType

from unified_chat.config import Settings, get_settings
from unified_chat.services.chat_service import ChatService
from unified_chat.services.configuration import (
    AdapterFactory,
    ChatServiceConfig,
    ConfigurationManager,
)
from unified_chat.services.registry import ProviderRegistry
from unified_chat.services.telemetry import SERVICE_NAME, setup_telemetry

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure logging for application modules."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


@dataclass
class ChatSystem:
    """Everything a consumer needs, wired together."""

    settings: Settings
    config_manager: ConfigurationManager
    registry: ProviderRegistry
    chat_service: ChatService

    async def start(self) -> None:
        """Start the health sweep, session sweep and metrics prune."""
        self.registry.start()
        self.chat_service.start()
        logger.info(f"Chat system started with {len(self.registry)} providers")

    async def close(self) -> None:
        await self.chat_service.close()
        await self.registry.close()
        logger.info("Chat system stopped")

    async def __aenter__(self) -> "ChatSystem":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


def create_chat_system(
    settings: Settings | None = None,
    adapter_factories: Mapping[str, AdapterFactory] | None = None,
) -> ChatSystem:
    """Build a chat system and register every configured provider.

    Args:
        settings: Defaults to the cached environment settings
        adapter_factories: Override how adapters are built (tests pass fakes)
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    if settings.otel_console_export or settings.otel_exporter_otlp_endpoint:
        setup_telemetry(
            SERVICE_NAME,
            otlp_endpoint=settings.otel_exporter_otlp_endpoint or None,
            console_export=settings.otel_console_export,
        )

    service_config = ChatServiceConfig.from_settings(settings)
    registry = ProviderRegistry(
        default_provider=service_config.default_provider,
        health_check_interval=service_config.health_check_interval,
        health_checks_enabled=service_config.enable_health_checks,
    )
    config_manager = ConfigurationManager(
        registry, service_config=service_config, adapter_factories=adapter_factories
    )
    config_manager.register_all_providers()

    chat_service = ChatService(registry, config_manager.service_config)

    environment = config_manager.get_environment_status()
    if environment.missing_credentials:
        logger.warning(
            f"Missing credentials: {', '.join(environment.missing_credentials)}"
        )

    return ChatSystem(
        settings=settings,
        config_manager=config_manager,
        registry=registry,
        chat_service=chat_service,
    )

"""
Provider registry with active health probing.

Holds registered adapters and their latest ProviderStatus, runs the recurring
health sweep in the background, and answers "best available provider"
queries by priority and health.
"""

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import fields, replace
from enum import Enum
from typing import Any

from unified_chat import constants
from unified_chat.adapters.base import (
    ProviderAdapter,
    ProviderCapabilities,
    ProviderConfig,
    ProviderStatus,
    validate_provider_config,
)
from unified_chat.exceptions import (
    ConfigurationError,
    InvalidRequestError,
    NoProvidersAvailableError,
    ProviderDisabledError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)


class HealthEvent(str, Enum):
    """Events emitted on provider health transitions."""

    PROVIDER_DOWN = "provider_down"
    PROVIDER_RECOVERED = "provider_recovered"


HealthEventHandler = Callable[[HealthEvent, str, ProviderStatus], None]


class ProviderRegistry:
    """
    Registry of provider adapters.

    Selection never awaits, so it always ranks over one consistent snapshot
    of the status map. Providers that were never probed count as available.
    """

    def __init__(
        self,
        default_provider: str = constants.DEFAULT_PROVIDER,
        health_check_interval: float = constants.HEALTH_CHECK_INTERVAL_SECONDS,
        health_checks_enabled: bool = True,
        history_size: int = constants.HEALTH_HISTORY_SIZE,
    ):
        self.default_provider = default_provider
        self.health_check_interval = health_check_interval
        self.health_checks_enabled = health_checks_enabled
        self._history_size = history_size
        self._adapters: dict[str, ProviderAdapter] = {}
        self._statuses: dict[str, ProviderStatus] = {}
        self._probe_history: dict[str, deque[bool]] = {}
        self._event_handlers: list[HealthEventHandler] = []
        self._health_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._adapters)

    def __contains__(self, name: object) -> bool:
        return name in self._adapters

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_provider(self, adapter: ProviderAdapter) -> None:
        """Register an adapter. Re-registering a name replaces the old adapter."""
        name = adapter.provider_name
        if name in self._adapters:
            logger.warning(f"Provider {name} already registered, replacing")
        self._adapters[name] = adapter
        self._statuses.pop(name, None)
        self._probe_history[name] = deque(maxlen=self._history_size)
        logger.info(f"Registered provider {name} (priority {adapter.config.priority})")

    def unregister_provider(self, name: str) -> bool:
        if self._adapters.pop(name, None) is None:
            return False
        self._statuses.pop(name, None)
        self._probe_history.pop(name, None)
        logger.info(f"Unregistered provider {name}")
        return True

    def get_provider(self, name: str | None = None) -> ProviderAdapter:
        """Get an adapter by name; the default provider when name is omitted."""
        name = name or self.default_provider
        adapter = self._adapters.get(name)
        if adapter is None:
            raise InvalidRequestError(f"Provider {name} is not registered", provider=name)
        return adapter

    def has_provider(self, name: str) -> bool:
        return name in self._adapters

    def get_all_providers(self) -> list[ProviderAdapter]:
        return list(self._adapters.values())

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _is_available(
        self, adapter: ProviderAdapter, statuses: dict[str, ProviderStatus]
    ) -> bool:
        status = statuses.get(adapter.provider_name)
        return status is None or status.healthy

    def get_healthy_providers(self) -> list[ProviderAdapter]:
        """Enabled providers not known to be unhealthy, highest priority first.

        Ties keep registration order (sorted() is stable).
        """
        statuses = dict(self._statuses)
        candidates = [
            adapter
            for adapter in self._adapters.values()
            if adapter.config.enabled and self._is_available(adapter, statuses)
        ]
        return sorted(candidates, key=lambda adapter: adapter.config.priority, reverse=True)

    def select_provider(
        self, preferred: str | None = None, allow_fallback: bool = True
    ) -> ProviderAdapter:
        """
        Pick the provider for a request.

        Args:
            preferred: Provider requested by the caller, if any
            allow_fallback: Whether to pick another provider when the
                preferred one cannot serve

        Returns:
            The chosen adapter

        Raises:
            ProviderUnavailableError: Preferred provider unhealthy, fallback off
            ProviderDisabledError: Preferred provider disabled, fallback off
            NoProvidersAvailableError: Nothing qualifies
        """
        if preferred and preferred in self._adapters:
            adapter = self._adapters[preferred]
            if not adapter.config.enabled:
                if not allow_fallback:
                    raise ProviderDisabledError(
                        f"Requested provider {preferred} is disabled", provider=preferred
                    )
                logger.info(f"Requested provider {preferred} is disabled, selecting another")
            elif self._is_available(adapter, self._statuses):
                return adapter
            elif not allow_fallback:
                raise ProviderUnavailableError(
                    f"Requested provider {preferred} is unavailable", provider=preferred
                )
            else:
                logger.info(f"Requested provider {preferred} is unhealthy, selecting another")
        elif preferred:
            logger.warning(f"Requested provider {preferred} is not registered, ignoring")

        healthy = self.get_healthy_providers()
        if not healthy:
            raise NoProvidersAvailableError("No healthy providers available")
        return healthy[0]

    def find_provider_by_capability(self, capability: str) -> ProviderAdapter | None:
        """Best available provider with a boolean capability flag set."""
        names = {f.name for f in fields(ProviderCapabilities)}
        if capability not in names:
            raise ValueError(f"Unknown capability: {capability}")
        for adapter in self.get_healthy_providers():
            if getattr(adapter.get_capabilities(), capability) is True:
                return adapter
        return None

    # ------------------------------------------------------------------
    # Config mutation (shared config objects)
    # ------------------------------------------------------------------

    def update_provider_config(self, name: str, **changes: Any) -> ProviderConfig:
        """Merge changes into the provider's shared config object."""
        config = self.get_provider(name).config
        valid = {f.name for f in fields(ProviderConfig)} - {"provider"}
        unknown = set(changes) - valid
        if unknown:
            raise ValueError(f"Unknown config fields for {name}: {sorted(unknown)}")
        errors = validate_provider_config(replace(config, **changes))
        if errors:
            raise ConfigurationError(name, errors)
        for key, value in changes.items():
            setattr(config, key, value)
        logger.info(f"Updated {name} config: {sorted(changes)}")
        return config

    def set_provider_enabled(self, name: str, enabled: bool) -> bool:
        adapter = self._adapters.get(name)
        if adapter is None:
            return False
        adapter.config.enabled = enabled
        logger.info(f"Provider {name} {'enabled' if enabled else 'disabled'}")
        return True

    def set_provider_priority(self, name: str, priority: int) -> bool:
        adapter = self._adapters.get(name)
        if adapter is None:
            return False
        adapter.config.priority = priority
        logger.info(f"Provider {name} priority set to {priority}")
        return True

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def add_event_handler(self, handler: HealthEventHandler) -> None:
        """Add handler for health events."""
        self._event_handlers.append(handler)

    def remove_event_handler(self, handler: HealthEventHandler) -> None:
        """Remove handler for health events."""
        if handler in self._event_handlers:
            self._event_handlers.remove(handler)

    def _emit_event(self, event: HealthEvent, status: ProviderStatus) -> None:
        """Emit a health event to all handlers."""
        logger.info(f"Health event: {event.value} for {status.provider}")
        for handler in self._event_handlers:
            try:
                handler(event, status.provider, status)
            except Exception as e:
                logger.error(f"Error in health event handler: {e}")

    def _record_status(self, name: str, status: ProviderStatus) -> ProviderStatus:
        history = self._probe_history.setdefault(name, deque(maxlen=self._history_size))
        history.append(status.healthy)
        failures = sum(1 for ok in history if not ok)
        status = replace(status, error_rate=failures / len(history))

        previous = self._statuses.get(name)
        self._statuses[name] = status

        # Never-probed providers count as healthy
        was_healthy = previous.healthy if previous is not None else True
        if was_healthy and not status.healthy:
            self._emit_event(HealthEvent.PROVIDER_DOWN, status)
        elif not was_healthy and status.healthy:
            self._emit_event(HealthEvent.PROVIDER_RECOVERED, status)
        return status

    async def check_provider_health(self, name: str) -> ProviderStatus:
        """Probe one provider now and store the result."""
        adapter = self._adapters.get(name)
        if adapter is None:
            return ProviderStatus(
                provider=name,
                healthy=False,
                error_rate=1.0,
                error=f"Provider {name} is not registered",
            )
        status = await adapter.health_check()
        # The adapter may have been unregistered while the probe was in flight
        if self._adapters.get(name) is not adapter:
            return status
        return self._record_status(name, status)

    async def check_all_providers_health(self) -> dict[str, ProviderStatus]:
        """Probe every registered provider concurrently."""
        names = list(self._adapters)
        results = await asyncio.gather(
            *(self.check_provider_health(name) for name in names), return_exceptions=True
        )
        statuses: dict[str, ProviderStatus] = {}
        for name, result in zip(names, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(f"Health check for {name} raised: {result}")
                continue
            statuses[name] = result
        return statuses

    def get_status(self, name: str) -> ProviderStatus | None:
        return self._statuses.get(name)

    def get_health_status(self) -> dict[str, ProviderStatus]:
        return dict(self._statuses)

    def get_provider_statistics(self) -> dict[str, Any]:
        """Summary counts plus one entry per provider."""
        statuses = dict(self._statuses)
        providers: dict[str, dict[str, Any]] = {}
        for name, adapter in self._adapters.items():
            status = statuses.get(name)
            providers[name] = {
                "enabled": adapter.config.enabled,
                "priority": adapter.config.priority,
                "model": adapter.model,
                "healthy": status.healthy if status else None,
                "last_check": status.last_check if status else None,
                "response_time_ms": status.response_time_ms if status else None,
                "error_rate": status.error_rate if status else None,
            }
        return {
            "total_providers": len(self._adapters),
            "healthy_providers": len(self.get_healthy_providers()),
            "disabled_providers": sum(
                1 for adapter in self._adapters.values() if not adapter.config.enabled
            ),
            "providers": providers,
        }

    async def _health_loop(self) -> None:
        """Background sweep: probe everything, then sleep."""
        while True:
            await self.check_all_providers_health()
            await asyncio.sleep(self.health_check_interval)

    def start(self) -> None:
        """Start the background health sweep."""
        if not self.health_checks_enabled or self._health_task is not None:
            return
        self._health_task = asyncio.create_task(self._health_loop())
        logger.info(f"Health checks started (interval: {self.health_check_interval}s)")

    async def stop(self) -> None:
        """Stop the background health sweep."""
        if self._health_task is None:
            return
        self._health_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._health_task
        self._health_task = None
        logger.info("Health checks stopped")

    async def close(self) -> None:
        """Stop probing and release adapter resources."""
        await self.stop()
        for adapter in self._adapters.values():
            try:
                await adapter.close()
            except Exception as e:
                logger.error(f"Error closing {adapter.provider_name}: {e}")

"""Tests for ProviderRegistry."""

import asyncio
from unittest.mock import MagicMock

import pytest

from unified_chat.exceptions import (
    ConfigurationError,
    InvalidRequestError,
    NoProvidersAvailableError,
    ProviderDisabledError,
    ProviderUnavailableError,
)
from unified_chat.services.registry import HealthEvent, ProviderRegistry


@pytest.fixture
def registry():
    return ProviderRegistry(default_provider="alpha", health_check_interval=0.01)


@pytest.fixture
def three_providers(registry, fake_adapter):
    """alpha (10), beta (5), gamma (1)."""
    adapters = {
        "alpha": fake_adapter("alpha", priority=10),
        "beta": fake_adapter("beta", priority=5),
        "gamma": fake_adapter("gamma", priority=1),
    }
    for adapter in adapters.values():
        registry.register_provider(adapter)
    return adapters


class TestRegistration:
    """Tests for provider registration and lookup."""

    def test_register_and_get(self, registry, fake_adapter):
        adapter = fake_adapter("alpha")
        registry.register_provider(adapter)

        assert registry.get_provider("alpha") is adapter
        assert registry.get_provider() is adapter
        assert "alpha" in registry
        assert len(registry) == 1

    def test_get_unknown_raises(self, registry):
        with pytest.raises(InvalidRequestError):
            registry.get_provider("missing")

    def test_reregister_replaces(self, registry, fake_adapter):
        """Test registering the same name again replaces the adapter."""
        registry.register_provider(fake_adapter("alpha"))
        replacement = fake_adapter("alpha", priority=3)
        registry.register_provider(replacement)

        assert registry.get_provider("alpha") is replacement
        assert len(registry) == 1

    def test_unregister(self, registry, fake_adapter):
        registry.register_provider(fake_adapter("alpha"))

        assert registry.unregister_provider("alpha") is True
        assert registry.unregister_provider("alpha") is False
        assert not registry.has_provider("alpha")


class TestSelection:
    """Tests for provider selection."""

    def test_highest_priority_first(self, registry, three_providers):
        assert registry.select_provider().provider_name == "alpha"
        assert [a.provider_name for a in registry.get_healthy_providers()] == [
            "alpha",
            "beta",
            "gamma",
        ]

    @pytest.mark.asyncio
    async def test_unhealthy_skipped(self, registry, three_providers):
        """Test an unhealthy top provider falls through to the next."""
        three_providers["alpha"].probe_error = RuntimeError("503 down")
        await registry.check_provider_health("alpha")

        assert registry.select_provider().provider_name == "beta"

    def test_preferred_provider_wins(self, registry, three_providers):
        assert registry.select_provider("gamma").provider_name == "gamma"

    @pytest.mark.asyncio
    async def test_preferred_unhealthy_with_fallback(self, registry, three_providers):
        three_providers["gamma"].probe_error = RuntimeError("503 down")
        await registry.check_provider_health("gamma")

        assert registry.select_provider("gamma").provider_name == "alpha"

    @pytest.mark.asyncio
    async def test_preferred_unhealthy_without_fallback(self, registry, three_providers):
        three_providers["gamma"].probe_error = RuntimeError("503 down")
        await registry.check_provider_health("gamma")

        with pytest.raises(ProviderUnavailableError):
            registry.select_provider("gamma", allow_fallback=False)

    def test_preferred_disabled_without_fallback(self, registry, three_providers):
        registry.set_provider_enabled("beta", False)

        with pytest.raises(ProviderDisabledError):
            registry.select_provider("beta", allow_fallback=False)
        assert registry.select_provider("beta").provider_name == "alpha"

    def test_unregistered_preferred_ignored(self, registry, three_providers):
        assert registry.select_provider("nonexistent").provider_name == "alpha"

    def test_disabled_excluded(self, registry, three_providers):
        registry.set_provider_enabled("alpha", False)

        assert registry.select_provider().provider_name == "beta"
        assert "alpha" not in [a.provider_name for a in registry.get_healthy_providers()]

    def test_priority_change_reorders(self, registry, three_providers):
        registry.set_provider_priority("gamma", 50)

        assert registry.select_provider().provider_name == "gamma"

    def test_equal_priority_keeps_registration_order(self, registry, fake_adapter):
        for name in ("first", "second", "third"):
            registry.register_provider(fake_adapter(name, priority=5))

        assert [a.provider_name for a in registry.get_healthy_providers()] == [
            "first",
            "second",
            "third",
        ]

    def test_nothing_available(self, registry, three_providers):
        for name in three_providers:
            registry.set_provider_enabled(name, False)

        with pytest.raises(NoProvidersAvailableError):
            registry.select_provider()

    def test_empty_registry(self, registry):
        with pytest.raises(NoProvidersAvailableError):
            registry.select_provider()

    def test_find_by_capability(self, registry, fake_adapter):
        registry.register_provider(fake_adapter("plain", priority=10, streaming=False))
        registry.register_provider(fake_adapter("streamer", priority=1, streaming=True))

        assert registry.find_provider_by_capability("supports_streaming").provider_name == (
            "streamer"
        )
        assert registry.find_provider_by_capability("supports_image_input") is None
        with pytest.raises(ValueError, match="Unknown capability"):
            registry.find_provider_by_capability("teleportation")

    def test_update_provider_config(self, registry, three_providers):
        config = registry.update_provider_config("beta", priority=99, timeout=5.0)

        assert config is three_providers["beta"].config
        assert config.priority == 99
        assert registry.select_provider().provider_name == "beta"
        with pytest.raises(ValueError, match="Unknown config fields"):
            registry.update_provider_config("beta", colour="red")

    def test_update_provider_config_rejects_invalid(self, registry, three_providers):
        with pytest.raises(ConfigurationError) as exc_info:
            registry.update_provider_config("beta", base_url="", models={}, priority=99)

        assert "base_url is required" in exc_info.value.errors
        assert "models.chat is required" in exc_info.value.errors
        config = three_providers["beta"].config
        assert config.priority == 5
        assert config.base_url


class TestHealth:
    """Tests for health probing and events."""

    @pytest.mark.asyncio
    async def test_check_all(self, registry, three_providers):
        three_providers["beta"].probe_error = RuntimeError("boom")

        statuses = await registry.check_all_providers_health()

        assert statuses["alpha"].healthy is True
        assert statuses["beta"].healthy is False
        assert registry.get_status("beta").healthy is False
        assert all(adapter.probes == 1 for adapter in three_providers.values())

    @pytest.mark.asyncio
    async def test_repeated_probes_are_idempotent(self, registry, three_providers):
        """Test probing an unchanged backend twice gives the same verdict."""
        first = await registry.check_provider_health("alpha")
        second = await registry.check_provider_health("alpha")

        assert first.healthy is second.healthy is True
        assert second.error_rate == 0.0

    @pytest.mark.asyncio
    async def test_rolling_error_rate(self, registry, three_providers):
        adapter = three_providers["alpha"]
        await registry.check_provider_health("alpha")
        adapter.probe_error = RuntimeError("boom")
        status = await registry.check_provider_health("alpha")

        assert status.healthy is False
        assert status.error_rate == 0.5

    @pytest.mark.asyncio
    async def test_unregistered_probe(self, registry):
        status = await registry.check_provider_health("ghost")

        assert status.healthy is False
        assert registry.get_status("ghost") is None

    @pytest.mark.asyncio
    async def test_down_and_recovered_events(self, registry, three_providers):
        """Test handlers fire only on health transitions."""
        handler = MagicMock()
        registry.add_event_handler(handler)
        adapter = three_providers["alpha"]

        await registry.check_provider_health("alpha")
        handler.assert_not_called()

        adapter.probe_error = RuntimeError("boom")
        await registry.check_provider_health("alpha")
        await registry.check_provider_health("alpha")
        assert handler.call_count == 1
        assert handler.call_args.args[0] == HealthEvent.PROVIDER_DOWN
        assert handler.call_args.args[1] == "alpha"

        adapter.probe_error = None
        await registry.check_provider_health("alpha")
        assert handler.call_count == 2
        assert handler.call_args.args[0] == HealthEvent.PROVIDER_RECOVERED

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_break_probe(self, registry, three_providers):
        registry.add_event_handler(MagicMock(side_effect=RuntimeError("handler bug")))
        three_providers["alpha"].probe_error = RuntimeError("boom")

        status = await registry.check_provider_health("alpha")

        assert status.healthy is False

    def test_remove_event_handler(self, registry):
        handler = MagicMock()
        registry.add_event_handler(handler)
        registry.remove_event_handler(handler)
        registry.remove_event_handler(handler)

    @pytest.mark.asyncio
    async def test_statistics(self, registry, three_providers):
        three_providers["gamma"].probe_error = RuntimeError("boom")
        registry.set_provider_enabled("beta", False)
        await registry.check_all_providers_health()

        stats = registry.get_provider_statistics()

        assert stats["total_providers"] == 3
        assert stats["healthy_providers"] == 1
        assert stats["disabled_providers"] == 1
        assert stats["providers"]["gamma"]["healthy"] is False
        assert stats["providers"]["alpha"]["priority"] == 10

    @pytest.mark.asyncio
    async def test_background_loop(self, registry, three_providers):
        """Test start() probes immediately and keeps probing until stopped."""
        registry.start()
        await asyncio.sleep(0.05)
        await registry.stop()

        assert three_providers["alpha"].probes >= 2
        probes = three_providers["alpha"].probes
        await asyncio.sleep(0.03)
        assert three_providers["alpha"].probes == probes

    @pytest.mark.asyncio
    async def test_disabled_health_checks_do_not_start(self, fake_adapter):
        registry = ProviderRegistry(health_checks_enabled=False)
        adapter = fake_adapter("alpha")
        registry.register_provider(adapter)

        registry.start()
        await asyncio.sleep(0.01)
        await registry.stop()

        assert adapter.probes == 0

    @pytest.mark.asyncio
    async def test_close_releases_adapters(self, registry, three_providers):
        await registry.close()

        assert all(adapter.closed for adapter in three_providers.values())

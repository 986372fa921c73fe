"""Shared pytest fixtures and configuration.

Integration tests are skipped by default. Run them with:
    pytest -m integration

Or run all tests:
    pytest --run-integration

IMPORTANT: All tests that call provider SDKs MUST mock them.
The block_real_llm_calls fixture (autouse=True) will raise an error if
any test tries to make a real API call without proper mocking.
"""

import os
from unittest.mock import AsyncMock, patch

import pytest

from unified_chat import constants
from unified_chat.adapters.base import (
    ProviderAdapter,
    ProviderCapabilities,
    ProviderConfig,
    StreamChunk,
)
from unified_chat.config import get_settings
from unified_chat.models import ChatRequest, ChatResponse

TEST_API_KEY = "test-key-0123456789"


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests (requires real provider credentials)",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (calls real providers)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --run-integration is passed."""
    if config.getoption("--run-integration"):
        return

    skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


class RealAPICallError(Exception):
    """Raised when a test tries to make a real API call without proper mocking."""

    pass


def _raise_real_api_error(*args, **kwargs):
    """Raise error when real API is called without mocking."""
    raise RealAPICallError(
        "Test attempted to make a real LLM API call! "
        "Mock the SDK client or use FakeAdapter from tests.conftest."
    )


@pytest.fixture(autouse=True)
def block_real_llm_calls(request):
    """Block real SDK calls unless test is marked as integration."""
    if "integration" in request.keywords:
        yield
        return

    with (
        patch("anthropic.AsyncAnthropic") as mock_anthropic,
        patch("google.genai.Client") as mock_genai,
    ):
        mock_anthropic.return_value.messages.create = AsyncMock(
            side_effect=_raise_real_api_error
        )
        mock_genai.return_value.aio.models.generate_content = AsyncMock(
            side_effect=_raise_real_api_error
        )
        yield


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Strip provider credentials and CHAT_ settings from the environment."""
    for env_key in constants.API_KEY_ENV.values():
        monkeypatch.delenv(env_key, raising=False)
    for name in [key for key in os.environ if key.startswith("CHAT_")]:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def provider_keys(monkeypatch):
    """Set a well-formed credential for every catalogue provider."""
    for env_key in constants.API_KEY_ENV.values():
        monkeypatch.setenv(env_key, TEST_API_KEY)
    return TEST_API_KEY


def make_config(
    provider: str = "alpha",
    priority: int = 1,
    streaming: bool = True,
    enabled: bool = True,
    **kwargs,
) -> ProviderConfig:
    """ProviderConfig for tests; never points at a real backend."""
    capabilities = kwargs.pop("capabilities", None) or ProviderCapabilities(
        supports_streaming=streaming
    )
    return ProviderConfig(
        provider=provider,
        name=provider.title(),
        api_key_env=kwargs.pop("api_key_env", f"{provider.upper()}_API_KEY"),
        base_url=kwargs.pop("base_url", f"https://{provider}.test/v1"),
        models=kwargs.pop("models", {"chat": f"{provider}-model"}),
        capabilities=capabilities,
        priority=priority,
        enabled=enabled,
        **kwargs,
    )


class FakeAdapter(ProviderAdapter):
    """Scripted adapter with no network access.

    ``replies`` is consumed in order (the last entry repeats); an exception
    entry is raised instead of answered. Streams yield ``stream_parts`` and
    then raise ``stream_error`` if set.
    """

    def __init__(
        self,
        config: ProviderConfig,
        replies=None,
        stream_parts=None,
        stream_error=None,
        probe_error=None,
        api_key: str | None = TEST_API_KEY,
        tokens_used: int | None = 7,
    ):
        super().__init__(config)
        self.replies = list(replies or ["ok"])
        self.stream_parts = list(stream_parts if stream_parts is not None else ["Hel", "lo"])
        self.stream_error = stream_error
        self.probe_error = probe_error
        self.api_key = api_key
        self.tokens_used = tokens_used
        self.requests: list[ChatRequest] = []
        self.probes = 0
        self.closed = False

    def get_api_key(self) -> str | None:
        return self.api_key

    async def _send_chat(self, request: ChatRequest, api_key: str) -> ChatResponse:
        self.requests.append(request)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return ChatResponse(
            content=reply,
            provider=self.provider_name,
            model=self.model,
            tokens_used=self.tokens_used,
            metadata={"finish_reason": "stop"},
        )

    async def _stream_content(self, request: ChatRequest, api_key: str):
        self.requests.append(request)
        for part in self.stream_parts:
            yield StreamChunk.text(part)
        if self.stream_error is not None:
            raise self.stream_error

    async def _probe(self, api_key: str) -> None:
        self.probes += 1
        if self.probe_error is not None:
            raise self.probe_error

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_adapter():
    """Factory for FakeAdapter instances."""

    def _create(provider: str = "alpha", priority: int = 1, streaming: bool = True, **kwargs):
        config_kwargs = {
            key: kwargs.pop(key) for key in ("enabled", "max_retries", "timeout") if key in kwargs
        }
        config = make_config(provider, priority=priority, streaming=streaming, **config_kwargs)
        return FakeAdapter(config, **kwargs)

    return _create

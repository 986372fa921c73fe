"""Base protocol and types for provider adapters."""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from unified_chat import constants
from unified_chat.config import get_credential
from unified_chat.exceptions import (
    ChatError,
    InvalidApiKeyError,
    MissingApiKeyError,
    ProviderDisabledError,
    RequestCancelledError,
    RequestTimeoutError,
    StreamingError,
    StreamingNotSupportedError,
    UnknownChatError,
    classify_exception,
)
from unified_chat.models import (
    ChatContext,
    ChatRequest,
    ChatResponse,
    PreferenceOverrides,
    estimate_tokens,
    generate_id,
    utcnow,
)

logger = logging.getLogger(__name__)

MessageFormat = Literal["openai", "google", "anthropic", "cohere"]
MESSAGE_FORMATS = frozenset({"openai", "google", "anthropic", "cohere"})


@dataclass(frozen=True)
class ProviderCapabilities:
    """What a backend can do. Validated on construction, never mutated."""

    supports_streaming: bool = False
    supports_system_message: bool = True
    supports_function_calling: bool = False
    supports_image_input: bool = False
    message_format: MessageFormat = "openai"
    requests_per_minute: int | None = None
    tokens_per_minute: int | None = None

    def __post_init__(self) -> None:
        if self.message_format not in MESSAGE_FORMATS:
            raise ValueError(
                f"Unknown message format {self.message_format!r}; "
                f"expected one of {sorted(MESSAGE_FORMATS)}"
            )
        for name in ("requests_per_minute", "tokens_per_minute"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")

    def rate_limit_hints(self) -> dict[str, int]:
        hints = {
            "requests_per_minute": self.requests_per_minute,
            "tokens_per_minute": self.tokens_per_minute,
        }
        return {name: value for name, value in hints.items() if value is not None}


@dataclass
class ProviderConfig:
    """Settings for one provider.

    The configuration manager owns these objects; the registry and adapters
    hold references to the same instance, so toggling ``enabled`` or
    ``priority`` takes effect on the next selection.
    """

    provider: str
    name: str
    api_key_env: str
    base_url: str
    models: dict[str, str] = field(default_factory=dict)
    capabilities: ProviderCapabilities | None = None
    timeout: float = constants.DEFAULT_TIMEOUT_SECONDS
    priority: int = 1
    enabled: bool = True
    max_retries: int = constants.DEFAULT_MAX_RETRIES

    @property
    def chat_model(self) -> str:
        return self.models.get("chat", "")


def validate_provider_config(config: ProviderConfig) -> list[str]:
    """Return every problem with a config (empty list when valid)."""
    errors: list[str] = []
    if not config.provider.strip():
        errors.append("provider id is required")
    if not config.name.strip():
        errors.append("name is required")
    if not config.api_key_env.strip():
        errors.append("api_key_env is required")
    if not config.base_url.strip():
        errors.append("base_url is required")
    if not config.chat_model.strip():
        errors.append("models.chat is required")
    if config.capabilities is None:
        errors.append("capabilities are required")
    if config.timeout <= 0:
        errors.append("timeout must be positive")
    if config.max_retries < 1:
        errors.append("max_retries must be at least 1")
    return errors


@dataclass(frozen=True)
class ProviderStatus:
    """Result of one health probe. Replaced wholesale, never edited."""

    provider: str
    healthy: bool
    last_check: datetime = field(default_factory=utcnow)
    response_time_ms: float = 0.0
    error_rate: float = 0.0
    rate_limit: dict[str, Any] = field(default_factory=dict)
    capabilities: ProviderCapabilities | None = None
    error: str | None = None


@dataclass
class StreamMetadata:
    """Summary carried by the terminal metadata chunk of a stream."""

    provider: str
    model: str
    tokens_used: int | None = None
    response_time_ms: float = 0.0
    finish_reason: str | None = None
    session_id: str | None = None


@dataclass
class StreamChunk:
    """One item of a streamed response."""

    type: Literal["content", "metadata", "error"]
    content: str = ""
    metadata: StreamMetadata | None = None
    error: ChatError | None = None
    id: str = field(default_factory=lambda: generate_id("chunk"))
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def text(cls, content: str) -> "StreamChunk":
        return cls(type="content", content=content)

    @classmethod
    def final(cls, metadata: StreamMetadata) -> "StreamChunk":
        return cls(type="metadata", metadata=metadata)

    @classmethod
    def failure(cls, error: ChatError) -> "StreamChunk":
        return cls(type="error", error=error)


@asynccontextmanager
async def deadline(
    timeout: float | None, cancel_event: asyncio.Event | None = None
) -> AsyncIterator[None]:
    """Bound the enclosed block by ``timeout`` seconds.

    Setting ``cancel_event`` expires the deadline immediately. Expiry raises
    RequestCancelledError when the event is set, RequestTimeoutError otherwise.
    Runs in the caller's task so streaming context managers stay in one task.
    """
    if cancel_event is not None and cancel_event.is_set():
        raise RequestCancelledError("Request cancelled by caller")

    loop = asyncio.get_running_loop()
    watcher: asyncio.Task[None] | None = None
    try:
        async with asyncio.timeout(timeout) as scope:
            if cancel_event is not None:

                async def _expire_on_cancel() -> None:
                    await cancel_event.wait()
                    scope.reschedule(loop.time())

                watcher = asyncio.create_task(_expire_on_cancel())
            yield
    except TimeoutError:
        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelledError("Request cancelled by caller") from None
        raise RequestTimeoutError(f"No response within {timeout}s") from None
    finally:
        if watcher is not None:
            watcher.cancel()


def render_auxiliary_context(auxiliary: dict[str, Any]) -> str:
    """Render structured context as a system-prompt block."""
    lines = ["Additional context:"]
    for key, value in auxiliary.items():
        rendered = value if isinstance(value, str) else json.dumps(value, default=str)
        lines.append(f"- {key}: {rendered}")
    return "\n".join(lines)


class ProviderAdapter(ABC):
    """Uniform contract over one upstream chat backend.

    Subclasses implement ``_send_chat`` and ``_stream_content`` and may
    override ``_probe``, ``_fetch_rate_limits`` and ``_translate_error``.
    This class owns the preconditions, deadlines and error normalization:
    ``chat`` only ever raises ChatError and ``stream_chat`` never raises.
    """

    def __init__(
        self,
        config: ProviderConfig,
        health_check_timeout: float = constants.HEALTH_CHECK_TIMEOUT_SECONDS,
    ):
        self.config = config
        self.health_check_timeout = health_check_timeout

    def __repr__(self) -> str:
        return f"{type(self).__name__}(provider={self.provider_name!r}, model={self.model!r})"

    @property
    def provider_name(self) -> str:
        """Return the provider id (e.g. 'groq', 'gemini')."""
        return self.config.provider

    @property
    def model(self) -> str:
        return self.config.chat_model

    def get_capabilities(self) -> ProviderCapabilities:
        return self.config.capabilities or ProviderCapabilities()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def get_api_key(self) -> str | None:
        return get_credential(self.config.api_key_env)

    def has_credentials(self) -> bool:
        return self.get_api_key() is not None

    def is_valid_api_key(self, api_key: str) -> bool:
        """Format check done before any network call."""
        return len(api_key) >= 8 and not any(ch.isspace() for ch in api_key)

    def _check_credentials(self) -> str:
        api_key = self.get_api_key()
        if api_key is None:
            raise MissingApiKeyError(
                f"{self.config.api_key_env} is not set", provider=self.provider_name
            )
        if not self.is_valid_api_key(api_key):
            raise InvalidApiKeyError(
                f"Malformed API key in {self.config.api_key_env}", provider=self.provider_name
            )
        return api_key

    def _check_enabled(self) -> None:
        if not self.config.enabled:
            raise ProviderDisabledError(
                f"Provider {self.provider_name} is disabled", provider=self.provider_name
            )

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _send_chat(self, request: ChatRequest, api_key: str) -> ChatResponse:
        """Perform one non-streaming backend call.

        May raise anything; the caller normalizes via ``_translate_error``.
        """
        ...

    @abstractmethod
    def _stream_content(
        self, request: ChatRequest, api_key: str
    ) -> AsyncGenerator[StreamChunk, None]:
        """Yield content chunks, optionally followed by one metadata chunk
        with backend-reported usage and finish reason."""
        ...

    async def _probe(self, api_key: str) -> None:
        """Minimal real request used by health checks."""
        probe = ChatRequest(
            message=constants.HEALTH_PROBE_MESSAGE,
            preferences=PreferenceOverrides(
                max_tokens=constants.HEALTH_PROBE_MAX_TOKENS, temperature=0.0
            ),
        )
        await self._send_chat(probe, api_key)

    async def _fetch_rate_limits(self) -> dict[str, Any]:
        return {}

    def _translate_error(self, exc: BaseException) -> ChatError:
        return classify_exception(exc, self.provider_name)

    async def close(self) -> None:
        """Release transport resources."""
        return None

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def build_conversation(self, request: ChatRequest) -> tuple[str | None, list[dict[str, str]]]:
        """Flatten request context into (system text, ordered user/assistant messages).

        The current message is always last. When the backend has no system
        role the system text is folded into the first user message.
        """
        context = request.context or ChatContext()
        system_parts: list[str] = []
        if context.system_prompt:
            system_parts.append(context.system_prompt)

        messages: list[dict[str, str]] = []
        for turn in context.messages or []:
            if turn.role == "system":
                if turn.content not in system_parts:
                    system_parts.append(turn.content)
                continue
            messages.append({"role": turn.role, "content": turn.content})
        messages.append({"role": "user", "content": request.message})

        if context.auxiliary:
            system_parts.append(render_auxiliary_context(context.auxiliary))

        system = "\n\n".join(system_parts) or None
        if system and not self.get_capabilities().supports_system_message:
            for message in messages:
                if message["role"] == "user":
                    message["content"] = f"{system}\n\n{message['content']}"
                    break
            system = None
        return system, messages

    def _request_timeout(self, request: ChatRequest) -> float:
        override = request.preferences.timeout if request.preferences else None
        return override or self.config.timeout

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """
        Send one chat request to the backend.

        Returns:
            ChatResponse stamped with provider, model and response time

        Raises:
            ChatError: Every failure, normalized
        """
        start_time = time.monotonic()
        try:
            self._check_enabled()
            api_key = self._check_credentials()
            async with deadline(self._request_timeout(request), request.cancel_event):
                response = await self._send_chat(request, api_key)
        except ChatError as e:
            if e.provider is None:
                e.provider = self.provider_name
            logger.warning(f"{self.provider_name} chat failed: {e.code.value}: {e.message}")
            raise
        except Exception as e:
            error = self._translate_error(e)
            logger.warning(f"{self.provider_name} chat failed: {error.code.value}: {error.message}")
            raise error from e

        response.provider = self.provider_name
        response.model = response.model or self.model
        response.response_time_ms = (time.monotonic() - start_time) * 1000
        return response

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        """
        Stream a chat response.

        Yields content chunks in arrival order, then exactly one metadata
        chunk. On failure yields a single error chunk instead and stops.
        Never raises.
        """
        start_time = time.monotonic()
        parts: list[str] = []
        reported: StreamMetadata | None = None
        try:
            self._check_enabled()
            if not self.get_capabilities().supports_streaming:
                raise StreamingNotSupportedError(
                    f"Provider {self.provider_name} does not support streaming",
                    provider=self.provider_name,
                )
            api_key = self._check_credentials()
            timeout = self._request_timeout(request)
            stream = self._stream_content(request, api_key)
            try:
                while True:
                    async with deadline(timeout, request.cancel_event):
                        chunk = await anext(stream, None)
                    if chunk is None:
                        break
                    if chunk.type == "content":
                        parts.append(chunk.content)
                        yield chunk
                    elif chunk.type == "metadata":
                        reported = chunk.metadata
                    else:
                        raise chunk.error or StreamingError("Backend reported a stream error")
            finally:
                await stream.aclose()
        except Exception as e:
            error = self._stream_error(e)
            logger.warning(
                f"{self.provider_name} stream failed after {len(parts)} chunks: "
                f"{error.code.value}: {error.message}"
            )
            yield StreamChunk.failure(error)
            return

        text = "".join(parts)
        tokens = reported.tokens_used if reported and reported.tokens_used is not None else None
        yield StreamChunk.final(
            StreamMetadata(
                provider=self.provider_name,
                model=(reported.model if reported else None) or self.model,
                tokens_used=tokens if tokens is not None else estimate_tokens(text),
                response_time_ms=(time.monotonic() - start_time) * 1000,
                finish_reason=(reported.finish_reason if reported else None) or "stop",
            )
        )

    def _stream_error(self, exc: BaseException) -> ChatError:
        error = self._translate_error(exc)
        if type(error) is UnknownChatError:
            return StreamingError(
                error.message, provider=self.provider_name, metadata=error.metadata
            )
        return error

    async def health_check(self) -> ProviderStatus:
        """Probe the backend. Never raises; failures come back as healthy=False."""
        start_time = time.monotonic()
        error_message: str | None = None
        try:
            api_key = self._check_credentials()
            async with deadline(self.health_check_timeout):
                await self._probe(api_key)
            healthy = True
        except Exception as e:
            error = self._translate_error(e)
            error_message = f"{error.code.value}: {error.message}"[:200]
            logger.warning(f"{self.provider_name} health check failed: {error_message}")
            healthy = False

        response_time_ms = (time.monotonic() - start_time) * 1000
        return ProviderStatus(
            provider=self.provider_name,
            healthy=healthy,
            response_time_ms=response_time_ms,
            error_rate=0.0 if healthy else 1.0,
            rate_limit=await self.get_rate_limit_status(),
            capabilities=self.get_capabilities(),
            error=error_message,
        )

    async def get_rate_limit_status(self) -> dict[str, Any]:
        """Best-effort rate-limit snapshot; may be empty."""
        try:
            live = await self._fetch_rate_limits()
        except Exception as e:
            logger.debug(f"Rate limit lookup failed for {self.provider_name}: {e}")
            live = {}
        return live or self.get_capabilities().rate_limit_hints()

    async def validate_connection(self) -> bool:
        """Check credentials and reachability with one probe."""
        status = await self.health_check()
        return status.healthy

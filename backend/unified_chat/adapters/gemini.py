"""Gemini adapter using Google GenAI SDK."""

import logging
from collections.abc import AsyncGenerator
from typing import Any

from google import genai
from google.genai import types
from google.genai.types import HttpOptions

from unified_chat import constants
from unified_chat.adapters.base import (
    ProviderAdapter,
    ProviderConfig,
    StreamChunk,
    StreamMetadata,
)
from unified_chat.exceptions import (
    ChatError,
    InvalidApiKeyError,
    InvalidResponseError,
    RateLimitError,
    classify_exception,
)
from unified_chat.models import ChatRequest, ChatResponse

logger = logging.getLogger(__name__)


def _finish_reason(candidate: Any) -> str | None:
    reason = getattr(candidate, "finish_reason", None)
    if reason is None:
        return None
    # FinishReason is a str enum; keep the bare value ("STOP")
    return str(getattr(reason, "value", reason))


class GeminiAdapter(ProviderAdapter):
    """Adapter for Gemini models via Google GenAI API."""

    def __init__(
        self,
        config: ProviderConfig,
        health_check_timeout: float = constants.HEALTH_CHECK_TIMEOUT_SECONDS,
    ):
        super().__init__(config, health_check_timeout=health_check_timeout)
        self._client: genai.Client | None = None
        self._client_key: str | None = None

    def _get_client(self, api_key: str) -> genai.Client:
        """Build the SDK client lazily, rebuilding if the key was rotated."""
        if self._client is None or self._client_key != api_key:
            # HttpOptions timeout is in milliseconds
            self._client = genai.Client(
                api_key=api_key,
                http_options=HttpOptions(timeout=int(self.config.timeout * 1000)),
            )
            self._client_key = api_key
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aio.aclose()
            self._client = None
            self._client_key = None

    def _build_request(
        self, request: ChatRequest
    ) -> tuple[list[types.Content], types.GenerateContentConfig]:
        prefs = request.resolved_preferences()
        system, messages = self.build_conversation(request)

        contents = [
            types.Content(
                # Map roles: user -> user, assistant -> model
                role="model" if message["role"] == "assistant" else "user",
                parts=[types.Part(text=message["content"])],
            )
            for message in messages
        ]
        # Disable AFC to prevent internal polling loops
        config = types.GenerateContentConfig(
            temperature=prefs.temperature,
            max_output_tokens=prefs.max_tokens,
            automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
        )
        if system:
            config.system_instruction = system
        return contents, config

    async def _send_chat(self, request: ChatRequest, api_key: str) -> ChatResponse:
        contents, config = self._build_request(request)
        response = await self._get_client(api_key).aio.models.generate_content(
            model=self.model,
            contents=contents,
            config=config,
        )

        if not response.candidates:
            raise InvalidResponseError(
                "Gemini returned no candidates (prompt may have been blocked)",
                provider=self.provider_name,
            )

        tokens = None
        if response.usage_metadata:
            tokens = response.usage_metadata.total_token_count

        return ChatResponse(
            content=response.text or "",
            provider=self.provider_name,
            model=self.model,
            tokens_used=tokens,
            metadata={"finish_reason": _finish_reason(response.candidates[0])},
        )

    async def _stream_content(
        self, request: ChatRequest, api_key: str
    ) -> AsyncGenerator[StreamChunk, None]:
        contents, config = self._build_request(request)
        tokens: int | None = None
        finish_reason: str | None = None

        async for chunk in await self._get_client(api_key).aio.models.generate_content_stream(
            model=self.model,
            contents=contents,
            config=config,
        ):
            if chunk.text:
                yield StreamChunk.text(chunk.text)
            if chunk.usage_metadata and chunk.usage_metadata.total_token_count:
                tokens = chunk.usage_metadata.total_token_count
            if chunk.candidates:
                finish_reason = _finish_reason(chunk.candidates[0]) or finish_reason

        yield StreamChunk.final(
            StreamMetadata(
                provider=self.provider_name,
                model=self.model,
                tokens_used=tokens,
                finish_reason=finish_reason,
            )
        )

    def _translate_error(self, exc: BaseException) -> ChatError:
        error = classify_exception(exc, self.provider_name)
        if isinstance(exc, ChatError):
            return error

        # The SDK sometimes only carries the status in the message text
        error_str = str(exc).lower()
        if "resource_exhausted" in error_str and not isinstance(error, RateLimitError):
            logger.warning(f"Gemini rate limit: {exc}")
            return RateLimitError(str(exc), provider=self.provider_name)
        if "api_key_invalid" in error_str and not isinstance(error, InvalidApiKeyError):
            logger.error(f"Gemini auth error: {exc}")
            return InvalidApiKeyError(str(exc), provider=self.provider_name)
        return error

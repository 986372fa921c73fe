"""Claude adapter using the Anthropic SDK (API key auth)."""

import logging
from collections.abc import AsyncGenerator
from typing import Any

import anthropic

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
    RateLimitError,
    RequestTimeoutError,
    UnknownChatError,
    classify_exception,
    parse_retry_after,
)
from unified_chat.models import ChatRequest, ChatResponse

logger = logging.getLogger(__name__)


class ClaudeAdapter(ProviderAdapter):
    """Adapter for Claude models via the Anthropic Messages API."""

    def __init__(
        self,
        config: ProviderConfig,
        health_check_timeout: float = constants.HEALTH_CHECK_TIMEOUT_SECONDS,
    ):
        super().__init__(config, health_check_timeout=health_check_timeout)
        self._client: anthropic.AsyncAnthropic | None = None
        self._client_key: str | None = None

    def _get_client(self, api_key: str) -> anthropic.AsyncAnthropic:
        if self._client is None or self._client_key != api_key:
            # SDK retries count beyond the first attempt
            self._client = anthropic.AsyncAnthropic(
                api_key=api_key,
                timeout=self.config.timeout,
                max_retries=max(self.config.max_retries - 1, 0),
            )
            self._client_key = api_key
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
            self._client_key = None

    def _build_params(self, request: ChatRequest) -> dict[str, Any]:
        prefs = request.resolved_preferences()
        system, messages = self.build_conversation(request)
        params: dict[str, Any] = {
            "model": self.model,
            "max_tokens": prefs.max_tokens,
            "temperature": prefs.temperature,
            "messages": messages,
        }
        if system:
            params["system"] = system
        return params

    async def _send_chat(self, request: ChatRequest, api_key: str) -> ChatResponse:
        response = await self._get_client(api_key).messages.create(**self._build_params(request))

        content = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        return ChatResponse(
            content=content,
            provider=self.provider_name,
            model=response.model or self.model,
            tokens_used=response.usage.input_tokens + response.usage.output_tokens,
            metadata={"finish_reason": response.stop_reason},
        )

    async def _stream_content(
        self, request: ChatRequest, api_key: str
    ) -> AsyncGenerator[StreamChunk, None]:
        params = self._build_params(request)
        async with self._get_client(api_key).messages.stream(**params) as stream:
            async for event in stream:
                if event.type == "content_block_delta" and hasattr(event.delta, "text"):
                    yield StreamChunk.text(event.delta.text)

            # Get final message for complete token counts
            final_message = await stream.get_final_message()

        yield StreamChunk.final(
            StreamMetadata(
                provider=self.provider_name,
                model=final_message.model or self.model,
                tokens_used=final_message.usage.input_tokens + final_message.usage.output_tokens,
                finish_reason=final_message.stop_reason,
            )
        )

    def _translate_error(self, exc: BaseException) -> ChatError:
        if isinstance(exc, ChatError):
            return classify_exception(exc, self.provider_name)

        if isinstance(exc, anthropic.APITimeoutError):
            return RequestTimeoutError(
                f"Claude request timed out: {exc}", provider=self.provider_name
            )
        if isinstance(exc, anthropic.APIConnectionError):
            return UnknownChatError(f"Claude connection error: {exc}", provider=self.provider_name)
        if isinstance(exc, anthropic.RateLimitError):
            logger.warning(f"Claude rate limit: {exc}")
            return RateLimitError(
                str(exc),
                provider=self.provider_name,
                retry_after=parse_retry_after(exc.response.headers.get("retry-after")),
            )
        if isinstance(exc, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
            logger.error(f"Claude auth error: {exc}")
            return InvalidApiKeyError(str(exc), provider=self.provider_name)
        return classify_exception(exc, self.provider_name)

"""Adapter for OpenAI-compatible chat-completions backends.

Covers Groq, Cerebras, Mistral and OpenRouter, which all accept the same
``/chat/completions`` body and stream Server-Sent Events.
"""

import json
import logging
from collections.abc import AsyncGenerator
from typing import Any

import httpx

from unified_chat import constants
from unified_chat.adapters.base import ProviderConfig, StreamChunk, StreamMetadata
from unified_chat.adapters.http import HTTPProviderAdapter
from unified_chat.exceptions import InvalidResponseError, StreamingError
from unified_chat.models import ChatRequest, ChatResponse

logger = logging.getLogger(__name__)


class OpenAICompatibleAdapter(HTTPProviderAdapter):
    """Adapter for backends exposing OpenAI-style /chat/completions."""

    chat_path = "/chat/completions"

    def __init__(
        self,
        config: ProviderConfig,
        client: httpx.AsyncClient | None = None,
        health_check_timeout: float = constants.HEALTH_CHECK_TIMEOUT_SECONDS,
        extra_headers: dict[str, str] | None = None,
    ):
        super().__init__(config, client=client, health_check_timeout=health_check_timeout)
        self._extra_headers = extra_headers or {}

    def _headers(self, api_key: str) -> dict[str, str]:
        return {**super()._headers(api_key), **self._extra_headers}

    def _build_payload(self, request: ChatRequest, stream: bool) -> dict[str, Any]:
        prefs = request.resolved_preferences()
        system, messages = self.build_conversation(request)
        api_messages: list[dict[str, str]] = []
        if system:
            api_messages.append({"role": "system", "content": system})
        api_messages.extend(messages)
        return {
            "model": self.model,
            "messages": api_messages,
            "temperature": prefs.temperature,
            "max_tokens": prefs.max_tokens,
            "stream": stream,
        }

    async def _send_chat(self, request: ChatRequest, api_key: str) -> ChatResponse:
        data = await self._post_json(
            self.chat_path,
            self._build_payload(request, stream=False),
            api_key,
            timeout=self._request_timeout(request),
        )
        try:
            choice = data["choices"][0]
            content = choice["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise InvalidResponseError(
                f"Unexpected completion shape from {self.provider_name}",
                provider=self.provider_name,
            ) from e

        usage = data.get("usage") or {}
        return ChatResponse(
            content=content,
            provider=self.provider_name,
            model=data.get("model") or self.model,
            tokens_used=usage.get("total_tokens"),
            metadata={"finish_reason": choice.get("finish_reason")},
        )

    async def _stream_content(
        self, request: ChatRequest, api_key: str
    ) -> AsyncGenerator[StreamChunk, None]:
        model = self.model
        finish_reason: str | None = None
        total_tokens: int | None = None

        payload = self._build_payload(request, stream=True)
        async with self._open_stream(
            self.chat_path, payload, api_key, timeout=self._request_timeout(request)
        ) as response:
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:") :].strip()
                if data == "[DONE]":
                    break
                try:
                    event = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed SSE line from {self.provider_name}: {data!r}")
                    continue

                if event.get("error"):
                    error = event["error"]
                    detail = error.get("message") if isinstance(error, dict) else error
                    raise StreamingError(str(detail), provider=self.provider_name)

                model = event.get("model") or model
                usage = event.get("usage") or (event.get("x_groq") or {}).get("usage")
                if usage:
                    total_tokens = usage.get("total_tokens", total_tokens)

                for choice in event.get("choices") or []:
                    text = (choice.get("delta") or {}).get("content")
                    if text:
                        yield StreamChunk.text(text)
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]

        yield StreamChunk.final(
            StreamMetadata(
                provider=self.provider_name,
                model=model,
                tokens_used=total_tokens,
                finish_reason=finish_reason,
            )
        )

"""Cohere adapter over the v1 chat endpoint."""

import json
import logging
from collections.abc import AsyncGenerator
from typing import Any

from unified_chat.adapters.base import StreamChunk, StreamMetadata
from unified_chat.adapters.http import HTTPProviderAdapter
from unified_chat.exceptions import InvalidResponseError, StreamingError
from unified_chat.models import ChatRequest, ChatResponse

logger = logging.getLogger(__name__)

# Cohere names the roles differently
_ROLE_MAP = {"user": "USER", "assistant": "CHATBOT"}


def _billed_tokens(meta: dict[str, Any] | None) -> int | None:
    billed = (meta or {}).get("billed_units") or {}
    if not billed:
        return None
    return int(billed.get("input_tokens", 0)) + int(billed.get("output_tokens", 0))


class CohereAdapter(HTTPProviderAdapter):
    """Adapter for Cohere's chat API (message + chat_history + preamble)."""

    chat_path = "/chat"

    def _build_payload(self, request: ChatRequest, stream: bool) -> dict[str, Any]:
        prefs = request.resolved_preferences()
        system, messages = self.build_conversation(request)
        *history, current = messages
        payload: dict[str, Any] = {
            "model": self.model,
            "message": current["content"],
            "chat_history": [
                {"role": _ROLE_MAP[m["role"]], "message": m["content"]} for m in history
            ],
            "temperature": prefs.temperature,
            "max_tokens": prefs.max_tokens,
            "stream": stream,
        }
        if system:
            payload["preamble"] = system
        return payload

    async def _send_chat(self, request: ChatRequest, api_key: str) -> ChatResponse:
        data = await self._post_json(
            self.chat_path,
            self._build_payload(request, stream=False),
            api_key,
            timeout=self._request_timeout(request),
        )
        text = data.get("text")
        if not isinstance(text, str):
            raise InvalidResponseError(
                "Cohere response has no text field", provider=self.provider_name
            )
        return ChatResponse(
            content=text,
            provider=self.provider_name,
            model=self.model,
            tokens_used=_billed_tokens(data.get("meta")),
            metadata={"finish_reason": data.get("finish_reason")},
        )

    async def _stream_content(
        self, request: ChatRequest, api_key: str
    ) -> AsyncGenerator[StreamChunk, None]:
        finish_reason: str | None = None
        tokens: int | None = None

        payload = self._build_payload(request, stream=True)
        async with self._open_stream(
            self.chat_path, payload, api_key, timeout=self._request_timeout(request)
        ) as response:
            # Newline-delimited JSON events, not SSE
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed Cohere stream line: {line!r}")
                    continue

                event_type = event.get("event_type")
                if event_type == "text-generation":
                    if event.get("text"):
                        yield StreamChunk.text(event["text"])
                elif event_type == "stream-end":
                    finish_reason = event.get("finish_reason")
                    if finish_reason == "ERROR":
                        raise StreamingError(
                            "Cohere ended the stream with an error", provider=self.provider_name
                        )
                    tokens = _billed_tokens((event.get("response") or {}).get("meta"))
                    break

        yield StreamChunk.final(
            StreamMetadata(
                provider=self.provider_name,
                model=self.model,
                tokens_used=tokens,
                finish_reason=finish_reason,
            )
        )

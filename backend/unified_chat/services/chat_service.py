"""
Chat orchestration.

ChatService is the facade callers use: it resolves the session, merges
session context into the request, picks a provider, walks the fallback
chain, stores the exchange and records metrics for every attempt.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import replace
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Tracer

from unified_chat.adapters.base import ProviderAdapter, StreamChunk
from unified_chat.exceptions import (
    ChatError,
    RequestCancelledError,
    StreamingError,
    StreamingNotSupportedError,
    classify_exception,
)
from unified_chat.models import (
    ChatContext,
    ChatMetrics,
    ChatRequest,
    ChatResponse,
    ChatSession,
    PreferenceOverrides,
    ProviderPerformanceMetrics,
)
from unified_chat.services.configuration import ChatServiceConfig
from unified_chat.services.metrics import MetricsRecorder
from unified_chat.services.registry import ProviderRegistry
from unified_chat.services.sessions import SessionManager
from unified_chat.services.telemetry import (
    get_current_trace_id,
    get_tracer,
    mark_span_error,
    set_span_attributes,
)

logger = logging.getLogger(__name__)


class ChatService:
    """
    Multi-provider chat with fallback and in-memory sessions.

    Requests on the same session are serialized by the session lock, held
    for the whole turn (including the whole stream for stream_message).
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        config: ChatServiceConfig | None = None,
        sessions: SessionManager | None = None,
        metrics: MetricsRecorder | None = None,
        tracer: Tracer | None = None,
    ):
        self.registry = registry
        self.config = config or ChatServiceConfig()
        self.sessions = sessions or SessionManager(
            session_timeout=self.config.session_timeout,
            cleanup_interval=self.config.session_cleanup_interval,
        )
        self.metrics = metrics or MetricsRecorder(
            max_entries=self.config.metrics_max_entries,
            trim_to=self.config.metrics_trim_to,
            retention_seconds=self.config.metrics_retention,
            prune_interval=self.config.metrics_prune_interval,
        )
        self._tracer = tracer or get_tracer(__name__)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        user_id: str | None = None,
        preferences: PreferenceOverrides | None = None,
        system_prompt: str | None = None,
        auxiliary_context: dict[str, Any] | None = None,
    ) -> str:
        session = self.sessions.create_session(
            user_id=user_id,
            preferences=preferences,
            system_prompt=system_prompt,
            auxiliary_context=auxiliary_context,
        )
        return session.id

    def get_session(self, session_id: str) -> ChatSession | None:
        return self.sessions.get_session(session_id)

    def update_session(
        self,
        session_id: str,
        *,
        user_id: str | None = None,
        preferences: PreferenceOverrides | None = None,
        system_prompt: str | None = None,
        auxiliary_context: dict[str, Any] | None = None,
    ) -> bool:
        return self.sessions.update_session(
            session_id,
            user_id=user_id,
            preferences=preferences,
            system_prompt=system_prompt,
            auxiliary_context=auxiliary_context,
        )

    def delete_session(self, session_id: str) -> bool:
        return self.sessions.delete_session(session_id)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_metrics(self, session_id: str | None = None) -> list[ChatMetrics]:
        return self.metrics.get_metrics(session_id)

    def get_provider_metrics(self) -> list[ProviderPerformanceMetrics]:
        return self.metrics.get_provider_metrics()

    def get_config(self) -> ChatServiceConfig:
        return replace(self.config, fallback_providers=list(self.config.fallback_providers))

    # ------------------------------------------------------------------
    # Request preparation
    # ------------------------------------------------------------------

    def _resolve_session(self, request: ChatRequest) -> ChatSession:
        system_prompt = request.context.system_prompt if request.context else None
        return self.sessions.resolve_session(
            request.session_id, preferences=request.preferences, system_prompt=system_prompt
        )

    def _enhance_request(self, request: ChatRequest, session: ChatSession) -> ChatRequest:
        """Merge session state into the request; request values win."""
        prefs = session.preferences.merged(request.preferences)
        context = request.context or ChatContext()

        if context.messages is not None:
            history = list(context.messages)
        elif prefs.enable_context_history:
            limit = 2 * prefs.max_context_length
            turns = session.history
            history = turns[len(turns) - limit :] if limit > 0 else []
        else:
            history = []

        return ChatRequest(
            message=request.message,
            session_id=session.id,
            provider=request.provider or prefs.preferred_provider,
            preferences=prefs.as_overrides(),
            context=ChatContext(
                system_prompt=context.system_prompt or session.system_prompt,
                auxiliary={**session.auxiliary_context, **context.auxiliary},
                messages=history,
            ),
            cancel_event=request.cancel_event,
        )

    def _provider_chain(self, request: ChatRequest) -> list[ProviderAdapter]:
        """Selected provider first, then the configured fallbacks in order.

        Fallbacks that are unregistered, disabled or have no credential are
        skipped; the selected provider is always attempted.
        """
        primary = self.registry.select_provider(request.provider)
        chain = [primary]
        seen = {primary.provider_name}
        for name in self.config.fallback_providers:
            if name in seen or not self.registry.has_provider(name):
                continue
            seen.add(name)
            adapter = self.registry.get_provider(name)
            if not adapter.config.enabled:
                continue
            if not adapter.has_credentials():
                logger.debug(f"Skipping fallback {name}: no credential")
                continue
            chain.append(adapter)
        return chain

    async def _backoff(self, request: ChatRequest) -> None:
        """Wait the retry delay between providers, waking early on cancellation."""
        if request.cancelled:
            raise RequestCancelledError("Request cancelled during fallback")
        delay = self.config.retry_delay
        if delay <= 0:
            return
        if request.cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(request.cancel_event.wait(), timeout=delay)
        except TimeoutError:
            return
        raise RequestCancelledError("Request cancelled during fallback")

    def _record_attempt(
        self,
        session: ChatSession,
        adapter: ProviderAdapter,
        response_time_ms: float,
        tokens_used: int | None = None,
        error: ChatError | None = None,
    ) -> None:
        self.metrics.record(
            ChatMetrics(
                provider=adapter.provider_name,
                model=adapter.model,
                session_id=session.id,
                response_time_ms=response_time_ms,
                tokens_used=tokens_used,
                success=error is None,
                error=error,
            )
        )

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send_message(self, request: ChatRequest) -> ChatResponse:
        """
        Send a message and wait for the full response.

        Raises:
            ChatError: Non-retryable failure, or the last error once every
                provider in the fallback chain failed
        """
        session = self._resolve_session(request)
        async with self.sessions.lock(session.id):
            session.touch()
            enhanced = self._enhance_request(request, session)

            with self._tracer.start_as_current_span("chat.send_message") as span:
                set_span_attributes(
                    span,
                    {"chat.session_id": session.id, "chat.requested_provider": enhanced.provider},
                )
                try:
                    chain = self._provider_chain(enhanced)
                    response = await self._execute_with_fallback(enhanced, chain, session)
                except ChatError as e:
                    mark_span_error(span, e)
                    raise
                set_span_attributes(
                    span,
                    {
                        "chat.provider": response.provider,
                        "chat.model": response.model,
                        "chat.tokens_used": response.tokens_used,
                    },
                )
                trace_id = get_current_trace_id()
                if trace_id:
                    response.metadata["trace_id"] = trace_id

            response.session_id = session.id
            self.sessions.append_exchange(session, request.message, response)
            return response

    async def _execute_with_fallback(
        self, request: ChatRequest, chain: list[ProviderAdapter], session: ChatSession
    ) -> ChatResponse:
        last_error: ChatError | None = None
        for index, adapter in enumerate(chain):
            if index > 0:
                await self._backoff(request)

            with self._tracer.start_as_current_span("chat.provider_attempt") as span:
                set_span_attributes(
                    span,
                    {
                        "chat.provider": adapter.provider_name,
                        "chat.model": adapter.model,
                        "chat.attempt": index + 1,
                    },
                )
                started = time.monotonic()
                try:
                    response = await adapter.chat(request)
                except Exception as e:
                    error = classify_exception(e, adapter.provider_name)
                    mark_span_error(span, error)
                    self._record_attempt(
                        session, adapter, (time.monotonic() - started) * 1000, error=error
                    )
                    if not error.retryable:
                        logger.error(
                            f"Non-retryable error from {adapter.provider_name}: "
                            f"{error.code.value}: {error.message}"
                        )
                        raise error
                    logger.warning(
                        f"Retryable error from {adapter.provider_name} "
                        f"({error.code.value}), trying next provider"
                    )
                    last_error = error
                    continue

            self._record_attempt(
                session, adapter, response.response_time_ms, tokens_used=response.tokens_used
            )
            if index > 0:
                logger.info(f"Fell back to {adapter.provider_name} after {index} failures")
            return response

        logger.error(f"All {len(chain)} providers failed for session {session.id}")
        assert last_error is not None
        raise last_error

    # ------------------------------------------------------------------
    # Stream
    # ------------------------------------------------------------------

    async def stream_message(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        """
        Stream a response.

        Chunks are forwarded as they arrive. A failed attempt yields its
        error chunk and, when retryable, the stream restarts on the next
        provider. Ends with one metadata chunk (success) or an error chunk.
        """
        session = self._resolve_session(request)
        async with self.sessions.lock(session.id):
            session.touch()
            enhanced = self._enhance_request(request, session)

            request_span = self._tracer.start_span("chat.stream_message")
            set_span_attributes(
                request_span,
                {"chat.session_id": session.id, "chat.requested_provider": enhanced.provider},
            )
            try:
                async for chunk in self._stream_with_fallback(enhanced, session, request_span):
                    yield chunk
            finally:
                request_span.end()

    def _streaming_chain(self, request: ChatRequest) -> list[ProviderAdapter]:
        """Like _provider_chain, but the selected provider must stream.

        Fallbacks without streaming are dropped.
        """
        primary, *fallbacks = self._provider_chain(request)
        if not primary.get_capabilities().supports_streaming:
            raise StreamingNotSupportedError(
                f"{primary.provider_name} does not support streaming",
                provider=primary.provider_name,
            )
        return [primary] + [
            adapter for adapter in fallbacks if adapter.get_capabilities().supports_streaming
        ]

    async def _stream_with_fallback(
        self, request: ChatRequest, session: ChatSession, request_span: trace.Span
    ) -> AsyncIterator[StreamChunk]:
        try:
            chain = self._streaming_chain(request)
        except ChatError as e:
            mark_span_error(request_span, e)
            yield StreamChunk.failure(e)
            return

        parent = trace.set_span_in_context(request_span)
        last_error: ChatError | None = None
        for index, adapter in enumerate(chain):
            if index > 0:
                try:
                    await self._backoff(request)
                except RequestCancelledError as e:
                    mark_span_error(request_span, e)
                    yield StreamChunk.failure(e)
                    return

            attempt_span = self._tracer.start_span("chat.provider_attempt", context=parent)
            set_span_attributes(
                attempt_span,
                {
                    "chat.provider": adapter.provider_name,
                    "chat.model": adapter.model,
                    "chat.attempt": index + 1,
                },
            )
            started = time.monotonic()
            parts: list[str] = []
            terminal: StreamChunk | None = None
            error: ChatError | None = None
            try:
                async for chunk in adapter.stream_chat(request):
                    if chunk.type == "content":
                        parts.append(chunk.content)
                        yield chunk
                    elif chunk.type == "metadata":
                        terminal = chunk
                    else:
                        error = chunk.error or StreamingError(
                            "Stream failed", provider=adapter.provider_name
                        )
                        yield chunk
                        break

                if error is None and terminal is None:
                    error = StreamingError(
                        "Stream ended without a terminal chunk", provider=adapter.provider_name
                    )
                    yield StreamChunk.failure(error)

                if error is not None:
                    mark_span_error(attempt_span, error)
                    self._record_attempt(
                        session, adapter, (time.monotonic() - started) * 1000, error=error
                    )
                    last_error = error
                    if not error.retryable:
                        logger.error(
                            f"Non-retryable stream error from {adapter.provider_name}: "
                            f"{error.code.value}"
                        )
                        mark_span_error(request_span, error)
                        return
                    logger.warning(
                        f"Stream from {adapter.provider_name} failed ({error.code.value}), "
                        f"trying next provider"
                    )
                    continue

                assert terminal is not None and terminal.metadata is not None
                metadata = replace(terminal.metadata, session_id=session.id)
                self._record_attempt(
                    session, adapter, metadata.response_time_ms, tokens_used=metadata.tokens_used
                )
                if parts:
                    response = ChatResponse(
                        content="".join(parts),
                        provider=metadata.provider,
                        model=metadata.model,
                        tokens_used=metadata.tokens_used,
                        response_time_ms=metadata.response_time_ms,
                        metadata={"finish_reason": metadata.finish_reason, "streamed": True},
                        session_id=session.id,
                    )
                    self.sessions.append_exchange(session, request.message, response)
                set_span_attributes(
                    request_span,
                    {"chat.provider": metadata.provider, "chat.tokens_used": metadata.tokens_used},
                )
                terminal.metadata = metadata
                yield terminal
                return
            finally:
                attempt_span.end()

        logger.error(f"All {len(chain)} streaming providers failed for session {session.id}")
        if last_error is not None:
            mark_span_error(request_span, last_error)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def cleanup(self) -> dict[str, int]:
        """Run the session sweep and metrics prune now."""
        return {
            "sessions_removed": self.sessions.cleanup_expired_sessions(),
            "metrics_removed": self.metrics.prune(),
        }

    def start(self) -> None:
        self.sessions.start()
        self.metrics.start()

    async def close(self) -> None:
        await self.sessions.stop()
        await self.metrics.stop()

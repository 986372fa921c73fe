"""Chat, session and metrics data types."""

import asyncio
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Literal

from unified_chat import constants
from unified_chat.exceptions import ChatError

Role = Literal["user", "assistant", "system"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_id(prefix: str) -> str:
    """Opaque identifier such as ``session-3f2a9c0d1e4b``."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 chars per token) for backends that report none."""
    return len(text) // 4


@dataclass
class ChatTurn:
    """A single message stored in a session."""

    role: Role
    content: str
    id: str = field(default_factory=lambda: generate_id("msg"))
    timestamp: datetime = field(default_factory=utcnow)
    tokens: int | None = None
    provider: str | None = None
    model: str | None = None


@dataclass
class PreferenceOverrides:
    """Per-request preference overrides. None means "use the session value"."""

    temperature: float | None = None
    max_tokens: int | None = None
    max_context_length: int | None = None
    stream_responses: bool | None = None
    timeout: float | None = None
    enable_context_history: bool | None = None
    preferred_provider: str | None = None

    def as_dict(self) -> dict[str, Any]:
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        return {name: value for name, value in values.items() if value is not None}


@dataclass
class SessionPreferences:
    """Effective generation preferences for a session."""

    temperature: float = constants.DEFAULT_TEMPERATURE
    max_tokens: int = constants.DEFAULT_MAX_TOKENS
    max_context_length: int = constants.DEFAULT_MAX_CONTEXT_LENGTH
    stream_responses: bool = False
    timeout: float | None = None
    enable_context_history: bool = True
    preferred_provider: str | None = None

    def merged(self, overrides: PreferenceOverrides | None) -> "SessionPreferences":
        """Return a copy with the non-None overrides applied."""
        if overrides is None:
            return replace(self)
        return replace(self, **overrides.as_dict())

    def as_overrides(self) -> PreferenceOverrides:
        return PreferenceOverrides(**{f.name: getattr(self, f.name) for f in fields(self)})


@dataclass
class ChatContext:
    """Context attached to a request.

    ``messages`` carries prior turns (filled from the session history by the
    chat service); ``auxiliary`` is free-form structured context rendered into
    the system prompt.
    """

    system_prompt: str | None = None
    auxiliary: dict[str, Any] = field(default_factory=dict)
    messages: list[ChatTurn] | None = None


@dataclass
class ChatRequest:
    """A chat request.

    ``cancel_event`` lets the caller abort an in-flight request; setting it
    fails the current attempt with REQUEST_CANCELLED and stops the fallback
    chain.
    """

    message: str
    session_id: str | None = None
    provider: str | None = None
    preferences: PreferenceOverrides | None = None
    context: ChatContext | None = None
    cancel_event: asyncio.Event | None = None

    def resolved_preferences(self) -> SessionPreferences:
        """Preferences with library defaults filled in for anything unset."""
        return SessionPreferences().merged(self.preferences)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


@dataclass
class ChatResponse:
    """A completed chat response."""

    content: str
    provider: str
    model: str
    id: str = field(default_factory=lambda: generate_id("msg"))
    tokens_used: int | None = None
    response_time_ms: float = 0.0
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None

    @property
    def finish_reason(self) -> str | None:
        return self.metadata.get("finish_reason")


@dataclass
class SessionMetadata:
    """Aggregate counters kept per session."""

    total_messages: int = 0
    total_tokens: int = 0
    average_response_time_ms: float = 0.0
    last_provider: str | None = None
    responses: int = 0

    def record_response(self, response: ChatResponse) -> None:
        self.responses += 1
        self.total_messages += 2
        self.total_tokens += response.tokens_used or 0
        self.last_provider = response.provider
        self.average_response_time_ms += (
            response.response_time_ms - self.average_response_time_ms
        ) / self.responses


@dataclass
class ChatSession:
    """In-memory multi-turn conversation state."""

    id: str = field(default_factory=lambda: generate_id("session"))
    user_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    turns: list[ChatTurn] = field(default_factory=list)
    preferences: SessionPreferences = field(default_factory=SessionPreferences)
    auxiliary_context: dict[str, Any] = field(default_factory=dict)
    metadata: SessionMetadata = field(default_factory=SessionMetadata)

    def touch(self) -> None:
        self.last_activity = utcnow()

    @property
    def system_prompt(self) -> str | None:
        """Content of the leading system turn, if any."""
        for turn in self.turns:
            if turn.role == "system":
                return turn.content
        return None

    @property
    def history(self) -> list[ChatTurn]:
        """Non-system turns in order."""
        return [turn for turn in self.turns if turn.role != "system"]


@dataclass
class ChatMetrics:
    """One record per provider attempt."""

    provider: str
    response_time_ms: float
    success: bool
    session_id: str | None = None
    model: str | None = None
    tokens_used: int | None = None
    error: ChatError | None = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ProviderPerformanceMetrics:
    """Rolling per-provider totals."""

    provider: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time_ms: float = 0.0
    average_tokens_used: float = 0.0
    error_types: dict[str, int] = field(default_factory=dict)
    rate_limit_count: int = 0
    last_request: datetime | None = None

    @property
    def success_rate(self) -> float:
        """Calculate success rate (0.0-1.0)."""
        if self.total_requests == 0:
            return 1.0
        return self.successful_requests / self.total_requests

    @property
    def error_rate(self) -> float:
        return 1.0 - self.success_rate

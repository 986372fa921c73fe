"""In-memory chat sessions with history trimming and an inactivity sweep."""

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta
from typing import Any

from unified_chat import constants
from unified_chat.models import (
    ChatResponse,
    ChatSession,
    ChatTurn,
    PreferenceOverrides,
    SessionPreferences,
    utcnow,
)

logger = logging.getLogger(__name__)


def trim_turns(turns: list[ChatTurn], max_context_length: int) -> list[ChatTurn]:
    """Keep every system turn plus the newest ``2 * max_context_length`` others.

    Relative order is preserved.
    """
    limit = 2 * max_context_length
    others = [turn for turn in turns if turn.role != "system"]
    if len(others) <= limit:
        return list(turns)
    keep = {id(turn) for turn in others[len(others) - limit :]} if limit > 0 else set()
    return [turn for turn in turns if turn.role == "system" or id(turn) in keep]


class SessionManager:
    """
    Owns all chat sessions.

    Each session has an asyncio.Lock; the chat service holds it for a whole
    turn so concurrent requests on one session apply in order. The sweep
    skips sessions whose lock is held.
    """

    def __init__(
        self,
        session_timeout: float = constants.SESSION_TIMEOUT_SECONDS,
        cleanup_interval: float = constants.SESSION_CLEANUP_INTERVAL_SECONDS,
    ):
        self.session_timeout = session_timeout
        self.cleanup_interval = cleanup_interval
        self._sessions: dict[str, ChatSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._cleanup_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def create_session(
        self,
        user_id: str | None = None,
        preferences: PreferenceOverrides | None = None,
        system_prompt: str | None = None,
        auxiliary_context: dict[str, Any] | None = None,
    ) -> ChatSession:
        session = ChatSession(
            user_id=user_id,
            preferences=SessionPreferences().merged(preferences),
            auxiliary_context=dict(auxiliary_context or {}),
        )
        if system_prompt:
            session.turns.append(ChatTurn(role="system", content=system_prompt))
        self._sessions[session.id] = session
        self._locks[session.id] = asyncio.Lock()
        logger.info(f"Created session {session.id}")
        return session

    def get_session(self, session_id: str) -> ChatSession | None:
        """Look up a session without refreshing its activity time."""
        return self._sessions.get(session_id)

    def update_session(
        self,
        session_id: str,
        *,
        user_id: str | None = None,
        preferences: PreferenceOverrides | None = None,
        system_prompt: str | None = None,
        auxiliary_context: dict[str, Any] | None = None,
    ) -> bool:
        """Apply partial updates. Returns False for unknown sessions."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        if user_id is not None:
            session.user_id = user_id
        if preferences is not None:
            session.preferences = session.preferences.merged(preferences)
        if system_prompt is not None:
            self._set_system_prompt(session, system_prompt)
        if auxiliary_context is not None:
            session.auxiliary_context.update(auxiliary_context)
        session.touch()
        return True

    def delete_session(self, session_id: str) -> bool:
        self._locks.pop(session_id, None)
        if self._sessions.pop(session_id, None) is None:
            return False
        logger.info(f"Deleted session {session_id}")
        return True

    def lock(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    def _set_system_prompt(self, session: ChatSession, system_prompt: str) -> None:
        """Replace the leading system turn, or add one."""
        for index, turn in enumerate(session.turns):
            if turn.role == "system":
                session.turns[index] = ChatTurn(role="system", content=system_prompt)
                return
        session.turns.insert(0, ChatTurn(role="system", content=system_prompt))

    def resolve_session(
        self,
        session_id: str | None,
        preferences: PreferenceOverrides | None = None,
        system_prompt: str | None = None,
    ) -> ChatSession:
        """Return the known session, or create one (unknown ids get a fresh id)."""
        if session_id and session_id in self._sessions:
            return self._sessions[session_id]
        if session_id:
            logger.info(f"Session {session_id} not found, creating a new one")
        return self.create_session(preferences=preferences, system_prompt=system_prompt)

    def append_exchange(
        self, session: ChatSession, user_message: str, response: ChatResponse
    ) -> None:
        """Store a user/assistant pair, update aggregates and trim."""
        session.turns.append(ChatTurn(role="user", content=user_message))
        session.turns.append(
            ChatTurn(
                role="assistant",
                content=response.content,
                tokens=response.tokens_used,
                provider=response.provider,
                model=response.model,
            )
        )
        session.metadata.record_response(response)
        session.turns = trim_turns(session.turns, session.preferences.max_context_length)
        session.touch()

    def cleanup_expired_sessions(self, now: datetime | None = None) -> int:
        """Remove sessions idle longer than the timeout. Busy sessions are skipped."""
        cutoff = (now or utcnow()) - timedelta(seconds=self.session_timeout)
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if session.last_activity < cutoff and not self.lock(session_id).locked()
        ]
        for session_id in expired:
            self._sessions.pop(session_id, None)
            self._locks.pop(session_id, None)
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired sessions")
        return len(expired)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.cleanup_expired_sessions()

    def start(self) -> None:
        if self._cleanup_task is not None:
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"Session sweep started (timeout: {self.session_timeout}s)")

    async def stop(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._cleanup_task
        self._cleanup_task = None

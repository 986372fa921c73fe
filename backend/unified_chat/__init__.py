"""Unified multi-provider chat with fallback, sessions and health tracking."""

from unified_chat.exceptions import ChatError, ErrorCode
from unified_chat.main import ChatSystem, configure_logging, create_chat_system
from unified_chat.models import (
    ChatContext,
    ChatRequest,
    ChatResponse,
    ChatSession,
    ChatTurn,
    PreferenceOverrides,
)
from unified_chat.services.chat_service import ChatService

__all__ = [
    "ChatContext",
    "ChatError",
    "ChatRequest",
    "ChatResponse",
    "ChatService",
    "ChatSession",
    "ChatSystem",
    "ChatTurn",
    "ErrorCode",
    "PreferenceOverrides",
    "configure_logging",
    "create_chat_system",
]

"""Provider adapters for chat backends."""

from unified_chat.adapters.base import (
    ProviderAdapter,
    ProviderCapabilities,
    ProviderConfig,
    ProviderStatus,
    StreamChunk,
    StreamMetadata,
)
from unified_chat.adapters.claude import ClaudeAdapter
from unified_chat.adapters.cohere import CohereAdapter
from unified_chat.adapters.gemini import GeminiAdapter
from unified_chat.adapters.openai_compat import OpenAICompatibleAdapter

__all__ = [
    "ClaudeAdapter",
    "CohereAdapter",
    "GeminiAdapter",
    "OpenAICompatibleAdapter",
    "ProviderAdapter",
    "ProviderCapabilities",
    "ProviderConfig",
    "ProviderStatus",
    "StreamChunk",
    "StreamMetadata",
]

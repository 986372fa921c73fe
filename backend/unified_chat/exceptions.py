"""Chat error taxonomy.

Every failure that crosses an adapter boundary is one of the ChatError
subclasses below. The fallback loop only looks at ``retryable``; callers can
switch on ``code`` or on the exception type.
"""

import json
import logging
from enum import Enum
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Stable error codes surfaced to callers."""

    NO_PROVIDERS_AVAILABLE = "NO_PROVIDERS_AVAILABLE"
    PROVIDER_DISABLED = "PROVIDER_DISABLED"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    INVALID_API_KEY = "INVALID_API_KEY"
    MISSING_API_KEY = "MISSING_API_KEY"
    RATE_LIMIT = "RATE_LIMIT"
    REQUEST_TIMEOUT = "REQUEST_TIMEOUT"
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    STREAMING_NOT_SUPPORTED = "STREAMING_NOT_SUPPORTED"
    STREAMING_ERROR = "STREAMING_ERROR"
    REQUEST_CANCELLED = "REQUEST_CANCELLED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ChatError(Exception):
    """Base exception for chat errors."""

    code: ErrorCode = ErrorCode.UNKNOWN_ERROR
    default_retryable: bool = True

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retryable: bool | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.retryable = self.default_retryable if retryable is None else retryable
        self.metadata = metadata or {}

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code.value}, provider={self.provider!r}, "
            f"retryable={self.retryable}, message={self.message!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logs and API payloads."""
        return {
            "code": self.code.value,
            "message": self.message,
            "provider": self.provider,
            "retryable": self.retryable,
            "metadata": dict(self.metadata),
        }


class NoProvidersAvailableError(ChatError):
    """No registered provider is enabled and healthy."""

    code = ErrorCode.NO_PROVIDERS_AVAILABLE
    default_retryable = True


class ProviderDisabledError(ChatError):
    """The provider is switched off in configuration."""

    code = ErrorCode.PROVIDER_DISABLED
    default_retryable = False


class ProviderUnavailableError(ChatError):
    """The explicitly requested provider is unhealthy and fallback is off."""

    code = ErrorCode.PROVIDER_UNAVAILABLE
    default_retryable = False


class InvalidApiKeyError(ChatError):
    """Credential rejected by the backend or malformed (401/403)."""

    code = ErrorCode.INVALID_API_KEY
    default_retryable = False


class MissingApiKeyError(ChatError):
    """No credential found under the configured environment key."""

    code = ErrorCode.MISSING_API_KEY
    default_retryable = False


class RateLimitError(ChatError):
    """Rate limit exceeded (429)."""

    code = ErrorCode.RATE_LIMIT
    default_retryable = True

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retry_after: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, provider=provider, metadata=metadata)
        self.retry_after = retry_after
        if retry_after is not None:
            self.metadata.setdefault("retry_after", retry_after)


class RequestTimeoutError(ChatError):
    """Backend call exceeded its deadline."""

    code = ErrorCode.REQUEST_TIMEOUT
    default_retryable = True


class InvalidRequestError(ChatError):
    """Backend rejected the request shape (400/404/422)."""

    code = ErrorCode.INVALID_REQUEST
    default_retryable = False


class InvalidResponseError(ChatError):
    """Backend returned something we could not parse."""

    code = ErrorCode.INVALID_RESPONSE
    default_retryable = False


class StreamingNotSupportedError(ChatError):
    code = ErrorCode.STREAMING_NOT_SUPPORTED
    default_retryable = False


class StreamingError(ChatError):
    """Stream broke after it started."""

    code = ErrorCode.STREAMING_ERROR
    default_retryable = True


class RequestCancelledError(ChatError):
    """Caller cancelled the request through its cancel event."""

    code = ErrorCode.REQUEST_CANCELLED
    default_retryable = False


class UnknownChatError(ChatError):
    code = ErrorCode.UNKNOWN_ERROR
    default_retryable = True


class ConfigurationError(ValueError):
    """Provider configuration failed validation."""

    def __init__(self, provider: str, errors: list[str]) -> None:
        super().__init__(f"Invalid configuration for {provider}: {'; '.join(errors)}")
        self.provider = provider
        self.errors = errors


def _status_code_of(exc: BaseException) -> int | None:
    """Pull an HTTP-like status code off httpx and SDK exceptions."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    for attr in ("status_code", "code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def error_for_status(
    status_code: int,
    message: str,
    provider: str | None = None,
    retry_after: float | None = None,
) -> ChatError:
    """Map an HTTP status code onto the error taxonomy."""
    metadata = {"status_code": status_code}
    if status_code in (401, 403):
        return InvalidApiKeyError(message, provider=provider, metadata=metadata)
    if status_code == 429:
        return RateLimitError(
            message, provider=provider, retry_after=retry_after, metadata=metadata
        )
    if status_code in (408, 504):
        return RequestTimeoutError(message, provider=provider, metadata=metadata)
    if status_code in (400, 404, 413, 422):
        return InvalidRequestError(message, provider=provider, metadata=metadata)
    if status_code >= 500:
        return UnknownChatError(message, provider=provider, metadata=metadata)
    return UnknownChatError(message, provider=provider, retryable=False, metadata=metadata)


def classify_exception(exc: BaseException, provider: str | None = None) -> ChatError:
    """Normalize an arbitrary exception into a ChatError.

    ChatErrors pass through (with the provider filled in). httpx and SDK
    errors are mapped by status code first, then by message heuristics for
    SDKs that only put the status in the message text.
    """
    if isinstance(exc, ChatError):
        if exc.provider is None:
            exc.provider = provider
        return exc

    message = str(exc) or type(exc).__name__

    if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
        return RequestTimeoutError(f"Request timed out: {message}", provider=provider)

    if isinstance(exc, json.JSONDecodeError):
        return InvalidResponseError(f"Malformed response: {message}", provider=provider)

    status_code = _status_code_of(exc)
    if status_code is not None and status_code >= 400:
        retry_after = None
        if isinstance(exc, httpx.HTTPStatusError):
            retry_after = parse_retry_after(exc.response.headers.get("retry-after"))
        return error_for_status(status_code, message, provider=provider, retry_after=retry_after)

    if isinstance(exc, httpx.TransportError):
        return UnknownChatError(f"Transport error: {message}", provider=provider)

    lowered = message.lower()
    if "429" in message or "rate limit" in lowered or "quota" in lowered:
        return RateLimitError(message, provider=provider)
    if "401" in message or "403" in message or "api key" in lowered:
        return InvalidApiKeyError(message, provider=provider)
    if "timeout" in lowered or "timed out" in lowered:
        return RequestTimeoutError(message, provider=provider)

    logger.debug(f"Unclassified error from {provider}: {type(exc).__name__}: {message}")
    return UnknownChatError(message, provider=provider)

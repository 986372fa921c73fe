"""Shared httpx transport for REST chat backends."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from unified_chat import constants
from unified_chat.adapters.base import ProviderAdapter, ProviderConfig
from unified_chat.exceptions import (
    ChatError,
    ErrorCode,
    InvalidResponseError,
    RateLimitError,
    error_for_status,
    parse_retry_after,
)

logger = logging.getLogger(__name__)

# Cap on any single backoff, including server-provided Retry-After
MAX_RETRY_WAIT_SECONDS = 8.0
CONNECT_TIMEOUT_SECONDS = 10.0

_backoff = wait_random_exponential(multiplier=0.5, max=MAX_RETRY_WAIT_SECONDS)


def is_transient_error(exc: BaseException) -> bool:
    """Check if an error is worth retrying against the same backend.

    Retried: rate limits, 5xx and connection failures. Timeouts are not
    retried here; they count against the caller's deadline.
    """
    if isinstance(exc, ChatError):
        return exc.retryable and exc.code in (ErrorCode.RATE_LIMIT, ErrorCode.UNKNOWN_ERROR)
    return isinstance(exc, httpx.TransportError) and not isinstance(exc, httpx.TimeoutException)


def wait_for_retry(retry_state: RetryCallState) -> float:
    """Honour Retry-After when the backend sent one, else jittered backoff."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        return min(exc.retry_after, MAX_RETRY_WAIT_SECONDS)
    return _backoff(retry_state)


class HTTPProviderAdapter(ProviderAdapter):
    """Base for adapters that talk JSON over HTTP with httpx."""

    def __init__(
        self,
        config: ProviderConfig,
        client: httpx.AsyncClient | None = None,
        health_check_timeout: float = constants.HEALTH_CHECK_TIMEOUT_SECONDS,
    ):
        super().__init__(config, health_check_timeout=health_check_timeout)
        self._client = client
        self._owns_client = client is None
        self._rate_limits: dict[str, Any] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def _timeout(self, timeout: float | None) -> httpx.Timeout:
        return httpx.Timeout(timeout or self.config.timeout, connect=CONNECT_TIMEOUT_SECONDS)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception(is_transient_error),
            stop=stop_after_attempt(max(1, self.config.max_retries)),
            wait=wait_for_retry,
            reraise=True,
        )

    def _capture_rate_limits(self, response: httpx.Response) -> None:
        """Remember x-ratelimit-* headers from the latest response."""
        snapshot = {
            key[len("x-ratelimit-") :].replace("-", "_"): value
            for key, value in response.headers.items()
            if key.lower().startswith("x-ratelimit-")
        }
        if snapshot:
            self._rate_limits = snapshot

    async def _fetch_rate_limits(self) -> dict[str, Any]:
        return dict(self._rate_limits)

    def _error_from_response(self, response: httpx.Response) -> ChatError:
        """Map an error response onto the error taxonomy."""
        status = response.status_code
        try:
            data = response.json()
            error = data.get("error", data) if isinstance(data, dict) else data
            if isinstance(error, dict):
                detail = error.get("message") or error.get("detail") or response.text
            else:
                detail = str(error)
        except ValueError:
            detail = response.text
        return error_for_status(
            status,
            f"{self.provider_name} returned HTTP {status}: {str(detail)[:200]}",
            provider=self.provider_name,
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )

    async def _post_json(
        self,
        path: str,
        payload: dict[str, Any],
        api_key: str,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """POST a JSON body with transport retries and return the decoded reply."""
        url = self._url(path)
        async for attempt in self._retrying():
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        f"Retrying {self.provider_name} "
                        f"(attempt {attempt.retry_state.attempt_number})"
                    )
                response = await self._get_client().post(
                    url,
                    json=payload,
                    headers=self._headers(api_key),
                    timeout=self._timeout(timeout),
                )
                self._capture_rate_limits(response)
                if response.status_code >= 400:
                    raise self._error_from_response(response)
        try:
            data = response.json()
        except ValueError as e:
            raise InvalidResponseError(
                f"{self.provider_name} returned a non-JSON body", provider=self.provider_name
            ) from e
        if not isinstance(data, dict):
            raise InvalidResponseError(
                f"{self.provider_name} returned an unexpected body", provider=self.provider_name
            )
        return data

    @asynccontextmanager
    async def _open_stream(
        self,
        path: str,
        payload: dict[str, Any],
        api_key: str,
        timeout: float | None = None,
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming POST; raises the mapped error on a non-2xx status."""
        async with self._get_client().stream(
            "POST",
            self._url(path),
            json=payload,
            headers=self._headers(api_key),
            timeout=self._timeout(timeout),
        ) as response:
            self._capture_rate_limits(response)
            if response.status_code >= 400:
                await response.aread()
                raise self._error_from_response(response)
            yield response

"""Per-attempt chat metrics and rolling per-provider totals."""

import asyncio
import contextlib
import logging
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime, timedelta

from unified_chat import constants
from unified_chat.exceptions import ErrorCode
from unified_chat.models import ChatMetrics, ProviderPerformanceMetrics, utcnow

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Bounded metrics log.

    When the log grows past ``max_entries`` it is cut down to the newest
    ``trim_to`` entries. A separate sweep drops entries older than the
    retention window.
    """

    def __init__(
        self,
        max_entries: int = constants.METRICS_MAX_ENTRIES,
        trim_to: int = constants.METRICS_TRIM_TO,
        retention_seconds: float = constants.METRICS_RETENTION_SECONDS,
        prune_interval: float = constants.METRICS_PRUNE_INTERVAL_SECONDS,
    ):
        if trim_to < 1:
            raise ValueError(f"trim_to must be at least 1, got {trim_to}")
        if trim_to > max_entries:
            raise ValueError(f"trim_to ({trim_to}) must not exceed max_entries ({max_entries})")
        self.max_entries = max_entries
        self.trim_to = trim_to
        self.retention_seconds = retention_seconds
        self.prune_interval = prune_interval
        self._entries: list[ChatMetrics] = []
        self._providers: dict[str, ProviderPerformanceMetrics] = {}
        self._prune_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def _enforce_cap(self) -> None:
        if len(self._entries) > self.max_entries:
            dropped = len(self._entries) - self.trim_to
            self._entries = self._entries[-self.trim_to :]
            logger.debug(f"Metrics log over {self.max_entries} entries, dropped {dropped}")

    def _update_provider(self, metrics: ChatMetrics) -> None:
        stats = self._providers.get(metrics.provider)
        if stats is None:
            stats = self._providers[metrics.provider] = ProviderPerformanceMetrics(
                provider=metrics.provider
            )

        stats.total_requests += 1
        stats.last_request = metrics.timestamp
        stats.average_response_time_ms += (
            metrics.response_time_ms - stats.average_response_time_ms
        ) / stats.total_requests

        if metrics.success:
            stats.successful_requests += 1
            tokens = metrics.tokens_used or 0
            stats.average_tokens_used += (
                tokens - stats.average_tokens_used
            ) / stats.successful_requests
            return

        stats.failed_requests += 1
        if metrics.error is not None:
            code = metrics.error.code.value
            stats.error_types[code] = stats.error_types.get(code, 0) + 1
            if metrics.error.code == ErrorCode.RATE_LIMIT:
                stats.rate_limit_count += 1

    def record(self, metrics: ChatMetrics) -> None:
        """Record one attempt."""
        self._entries.append(metrics)
        self._update_provider(metrics)
        self._enforce_cap()

    def extend(self, entries: Iterable[ChatMetrics]) -> None:
        """Record a batch (e.g. replayed from another process), then apply the cap once."""
        for metrics in entries:
            self._entries.append(metrics)
            self._update_provider(metrics)
        self._enforce_cap()

    def get_metrics(self, session_id: str | None = None) -> list[ChatMetrics]:
        if session_id is None:
            return list(self._entries)
        return [m for m in self._entries if m.session_id == session_id]

    def get_provider_metrics(
        self, provider: str | None = None
    ) -> list[ProviderPerformanceMetrics]:
        """Snapshot copies of the per-provider totals."""
        return [
            replace(stats, error_types=dict(stats.error_types))
            for name, stats in self._providers.items()
            if provider is None or name == provider
        ]

    def prune(self, now: datetime | None = None) -> int:
        """Drop entries older than the retention window and re-apply the cap."""
        cutoff = (now or utcnow()) - timedelta(seconds=self.retention_seconds)
        before = len(self._entries)
        self._entries = [m for m in self._entries if m.timestamp >= cutoff]
        self._enforce_cap()
        removed = before - len(self._entries)
        if removed:
            logger.info(f"Pruned {removed} metrics entries")
        return removed

    async def _prune_loop(self) -> None:
        while True:
            await asyncio.sleep(self.prune_interval)
            self.prune()

    def start(self) -> None:
        if self._prune_task is not None:
            return
        self._prune_task = asyncio.create_task(self._prune_loop())

    async def stop(self) -> None:
        if self._prune_task is None:
            return
        self._prune_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._prune_task
        self._prune_task = None

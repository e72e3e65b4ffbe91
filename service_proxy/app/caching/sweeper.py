"""
Background removal of expired cache records.

Expiry is enforced lazily on every read; the sweeper only reclaims disk
space for URLs that are never requested again.
"""

import asyncio
from typing import Callable, Dict, Optional

from shared.errors import CacheDecodeError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .fetch_cache import DEFAULT_TTL_MS, now_ms
from .record import decode
from .store import FileCacheStore


class CacheSweeper:
    """Periodically deletes expired and undecodable records."""

    def __init__(
        self,
        store: FileCacheStore,
        *,
        ttl_ms: int = DEFAULT_TTL_MS,
        interval_seconds: float = 0,
        clock: Callable[[], int] = now_ms,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.ttl_ms = ttl_ms
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("proxy.cache_sweeper")
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return self.interval_seconds > 0

    async def sweep_once(self) -> Dict[str, int]:
        summary = {"scanned": 0, "expired": 0, "corrupt": 0, "kept": 0, "errors": 0}
        now = self.clock()

        for key in await self.store.keys():
            summary["scanned"] += 1
            try:
                data = await self.store.get(key)
            except OSError as exc:
                self.logger.warning("Sweep could not read cache record", key=key, error=str(exc))
                summary["errors"] += 1
                continue
            if data is None:
                # Replaced or removed by a request since listing
                continue

            try:
                record = decode(data)
            except CacheDecodeError:
                reason = "corrupt"
            else:
                if not record.is_expired(now, self.ttl_ms):
                    summary["kept"] += 1
                    continue
                reason = "expired"

            # A request may have refreshed the record since it was read.
            # The window between this re-read and the delete stays open;
            # losing it only costs one upstream fetch.
            try:
                current = await self.store.get(key)
            except OSError as exc:
                self.logger.warning("Sweep could not re-read cache record", key=key, error=str(exc))
                summary["errors"] += 1
                continue
            if current is None:
                continue
            if current != data:
                summary["kept"] += 1
                continue

            if await self.store.delete(key):
                summary[reason] += 1
                if self.metrics is not None:
                    self.metrics.increment_counter("cache_swept_total", reason=reason)
            else:
                summary["errors"] += 1

        self.logger.info("Cache sweep finished", **summary)
        return summary

    async def start(self) -> None:
        """Start the sweep loop if an interval is configured."""
        if self._running or not self.enabled:
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep_once()
            except Exception as exc:
                self.logger.error("Cache sweep failed", error=str(exc), exc_info=True)

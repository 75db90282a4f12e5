"""Background sweep of expired token state.

The reaper only ever calls the store's ``delete_expired``. It can run as an
asyncio task next to the service, be driven manually through :meth:`sweep`,
or be disabled and scheduled from a separate process.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timedelta, timezone
from typing import Optional

from tokenward.logging import get_logger
from tokenward.storage.common import TokenStore
from tokenward.storage.models import ReapResult

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 60 * 60
DEFAULT_GRACE_SECONDS = 5 * 60
RETRY_BASE_SECONDS = 30


class ExpiryReaper:
    def __init__(
        self,
        store: TokenStore,
        *,
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
        grace_seconds: int = DEFAULT_GRACE_SECONDS,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if grace_seconds < 0:
            raise ValueError("grace_seconds must be non-negative")
        self.store = store
        self.interval_seconds = interval_seconds
        self.grace_seconds = grace_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def sweep(self, now: Optional[datetime] = None) -> ReapResult:
        """Delete records, markers and families expired for longer than the grace."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.grace_seconds)
        result = self.store.delete_expired(cutoff)
        if result.total:
            logger.info(
                "expiry_sweep_completed",
                tokens_deleted=result.tokens,
                markers_deleted=result.markers,
                families_deleted=result.families,
            )
        else:
            logger.debug("expiry_sweep_noop")
        return result

    def next_delay(self, consecutive_errors: int) -> float:
        """Seconds to wait before the next sweep.

        Failed sweeps are retried sooner than the regular interval, doubling
        from ``RETRY_BASE_SECONDS`` and never waiting longer than the interval.
        """
        if consecutive_errors <= 0:
            return self.interval_seconds
        return min(
            self.interval_seconds, RETRY_BASE_SECONDS * 2 ** (consecutive_errors - 1)
        )

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("expiry_reaper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="expiry-reaper")
        logger.info(
            "expiry_reaper_started",
            interval_seconds=self.interval_seconds,
            grace_seconds=self.grace_seconds,
        )

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("expiry_reaper_stopped")

    async def _run_loop(self) -> None:
        failures = 0
        while self._running:
            try:
                # Sweeps take shard locks, keep them off the event loop thread
                await asyncio.to_thread(self.sweep)
            except Exception as exc:
                failures += 1
                logger.error(
                    "expiry_sweep_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_failures=failures,
                    retry_in_seconds=self.next_delay(failures),
                )
            else:
                failures = 0
            await asyncio.sleep(self.next_delay(failures))


async def create_expiry_reaper(
    store: TokenStore,
    *,
    auto_start: bool = True,
    interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
    grace_seconds: int = DEFAULT_GRACE_SECONDS,
) -> ExpiryReaper:
    """Factory function to create and optionally start an expiry reaper.

    Args:
        store: Token store shared with the issuing service
        auto_start: Whether to start the periodic sweep immediately
        interval_seconds: Seconds between sweeps
        grace_seconds: How long past expiry state is kept before deletion

    Returns:
        ExpiryReaper instance
    """
    reaper = ExpiryReaper(
        store, interval_seconds=interval_seconds, grace_seconds=grace_seconds
    )

    if auto_start:
        await reaper.start()

    return reaper


__all__ = ["ExpiryReaper", "create_expiry_reaper"]

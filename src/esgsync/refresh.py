"""Interval polling and manual refresh of a fixed set of cache keys."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from contextlib import suppress

from esgsync.duration import parse_duration
from esgsync.notify import LoggingNotifier, Notifier
from esgsync.smart_cache import SmartCache
from esgsync.types import Duration, QueryKey

logger = logging.getLogger(__name__)


class RefreshController:
    """Invalidates keys every ``interval`` and on demand.

    Polling runs independently of realtime invalidation and covers events
    the change feed missed or never subscribed to.
    """

    def __init__(
        self,
        cache: SmartCache,
        keys: Iterable[QueryKey],
        *,
        interval: Duration,
        notifier: Notifier | None = None,
    ) -> None:
        self._interval = parse_duration(interval)
        if self._interval <= 0:
            raise ValueError("interval must be > 0")
        self._cache = cache
        self._keys = [tuple(k) for k in keys]
        self._notifier = notifier or LoggingNotifier()
        self._task: asyncio.Task[None] | None = None
        self._in_flight = 0
        self._last_refresh: int | None = None

    @property
    def keys(self) -> list[QueryKey]:
        return list(self._keys)

    @property
    def is_refreshing(self) -> bool:
        """True while at least one manual refresh is running."""
        return self._in_flight > 0

    @property
    def last_refresh(self) -> int | None:
        return self._last_refresh

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="refresh-controller")
        logger.debug(
            "Polling %d key(s) every %dms", len(self._keys), self._interval
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def refresh(self) -> None:
        """Invalidate every key now. Failures notify the user and re-raise."""
        self._in_flight += 1
        try:
            await self._invalidate_all()
            self._last_refresh = self._cache.now()
        except Exception as e:
            logger.warning("Manual refresh failed: %s", e)
            self._notifier.error("Refresh failed", str(e))
            raise
        finally:
            self._in_flight -= 1

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval / 1000)
            try:
                await self._invalidate_all()
            except Exception as e:
                # The next tick still runs
                logger.warning("Scheduled refresh failed: %s", e)
                self._notifier.error("Automatic refresh failed", str(e))

    async def _invalidate_all(self) -> None:
        await asyncio.gather(*(self._cache.invalidate(key) for key in self._keys))

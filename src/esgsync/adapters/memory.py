"""In-memory cache store and change feed (async only)."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator

from esgsync.types import CacheEntry, ChangeEvent, EventType, RowFilter

logger = logging.getLogger(__name__)


class AsyncMemoryStore:
    """Async in-memory cache store with optional LRU eviction."""

    def __init__(self, max_items: int | None = None) -> None:
        self._cache: OrderedDict[str, CacheEntry[object]] = OrderedDict()
        self._max_items = max_items
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> CacheEntry[object] | None:
        """Get a cache entry by key."""
        async with self._lock:
            entry = self._cache.get(key)
            if entry:
                self._cache.move_to_end(key)  # LRU touch
            return entry

    async def set(self, key: str, entry: CacheEntry[object]) -> None:
        """Store a cache entry."""
        async with self._lock:
            self._cache[key] = entry
            self._cache.move_to_end(key)
            if self._max_items and len(self._cache) > self._max_items:
                evicted, _ = self._cache.popitem(last=False)
                logger.debug("LRU evicted %s", evicted)

    async def delete(self, key: str) -> None:
        """Delete a cache entry."""
        async with self._lock:
            self._cache.pop(key, None)

    async def keys(self) -> list[str]:
        async with self._lock:
            return list(self._cache)

    async def clear(self) -> None:
        """Clear all cached entries."""
        async with self._lock:
            self._cache.clear()

    async def disconnect(self) -> None:
        """Disconnect from the storage backend (no-op for memory)."""
        pass


class MemoryChannel:
    """A channel fed by :class:`MemoryChannelHub`."""

    def __init__(
        self,
        hub: MemoryChannelHub,
        table: str,
        filter: RowFilter | None,
        events: tuple[EventType, ...],
    ) -> None:
        self._hub = hub
        self.table = table
        self.filter = filter
        self.events = events
        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()
        self.closed = False

    def accepts(self, event: ChangeEvent) -> bool:
        if self.closed or event.table != self.table:
            return False
        if event.event_type not in self.events:
            return False
        return self.filter is None or self.filter.matches(event.row)

    def deliver(self, event: ChangeEvent) -> None:
        self._queue.put_nowait(event)

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._hub._detach(self)
        self._queue.put_nowait(None)


class MemoryChannelHub:
    """In-process change feed. ``publish`` fans events out to open channels."""

    def __init__(self) -> None:
        self._channels: list[MemoryChannel] = []

    @property
    def open_channel_count(self) -> int:
        return len(self._channels)

    async def open_channel(
        self,
        table: str,
        filter: RowFilter | None = None,
        events: tuple[EventType, ...] = (
            EventType.INSERT,
            EventType.UPDATE,
            EventType.DELETE,
        ),
    ) -> MemoryChannel:
        channel = MemoryChannel(self, table, filter, events)
        self._channels.append(channel)
        logger.debug("Opened memory channel for %s (filter=%s)", table, filter)
        return channel

    def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to every matching channel. Returns the match count."""
        matched = 0
        for channel in list(self._channels):
            if channel.accepts(event):
                channel.deliver(event)
                matched += 1
        return matched

    def _detach(self, channel: MemoryChannel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

"""Base adapter protocols for cache stores and change feeds."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from esgsync.types import CacheEntry, ChangeEvent, EventType, RowFilter


@runtime_checkable
class AsyncCacheStore(Protocol):
    """Async keyed store for cache entries.

    Keys are serialized query keys. Entries are only ever replaced whole.
    """

    async def get(self, key: str) -> CacheEntry[object] | None:
        """Get a cache entry by key."""
        ...

    async def set(self, key: str, entry: CacheEntry[object]) -> None:
        """Store a cache entry, replacing any previous one."""
        ...

    async def delete(self, key: str) -> None:
        """Delete a cache entry."""
        ...

    async def keys(self) -> list[str]:
        """List the keys of every stored entry."""
        ...

    async def clear(self) -> None:
        """Clear all cached entries."""
        ...

    async def disconnect(self) -> None:
        """Disconnect from the storage backend."""
        ...


@runtime_checkable
class Channel(Protocol):
    """An open change feed. Iterate for events, close to unsubscribe."""

    def __aiter__(self) -> AsyncIterator[ChangeEvent]: ...

    async def close(self) -> None:
        """Stop delivering events and release the subscription."""
        ...


@runtime_checkable
class ChannelProvider(Protocol):
    """Opens change-feed channels filtered by table, column and event type."""

    async def open_channel(
        self,
        table: str,
        filter: RowFilter | None = None,
        events: tuple[EventType, ...] = (
            EventType.INSERT,
            EventType.UPDATE,
            EventType.DELETE,
        ),
    ) -> Channel:
        """Open a channel delivering matching change events."""
        ...

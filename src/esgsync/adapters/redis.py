"""Redis cache store and pub/sub change feed."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from esgsync.types import CacheEntry, ChangeEvent, EventType, Priority, RowFilter

logger = logging.getLogger(__name__)


def _serialize_entry(entry: CacheEntry[object]) -> str:
    """Serialize a cache entry to JSON."""
    return json.dumps(
        {
            "key": list(entry.key),
            "data": entry.data,
            "fetched_at": entry.fetched_at,
            "priority": entry.priority.value,
            "stale_time": entry.stale_time,
            "gc_time": entry.gc_time,
            "invalidated": entry.invalidated,
        }
    )


def _deserialize_entry(data: bytes | str) -> CacheEntry[object]:
    """Deserialize JSON to a cache entry."""
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    obj = json.loads(data)
    return CacheEntry(
        key=tuple(obj["key"]),
        data=obj["data"],
        fetched_at=obj["fetched_at"],
        priority=Priority(obj["priority"]),
        stale_time=obj["stale_time"],
        gc_time=obj["gc_time"],
        invalidated=obj.get("invalidated", False),
    )


def _serialize_event(event: ChangeEvent) -> str:
    return json.dumps(
        {
            "table": event.table,
            "eventType": event.event_type.value,
            "new": event.new,
            "old": event.old,
            "commit_timestamp": event.commit_timestamp,
        }
    )


def _deserialize_event(data: bytes | str) -> ChangeEvent:
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    obj = json.loads(data)
    return ChangeEvent(
        table=obj["table"],
        event_type=EventType(obj["eventType"]),
        new=obj.get("new") or {},
        old=obj.get("old") or {},
        commit_timestamp=obj.get("commit_timestamp"),
    )


class AsyncRedisStore:
    """Async Redis cache store."""

    def __init__(
        self,
        client: Any,  # redis.asyncio.Redis
        *,
        prefix: str = "esgsync",
    ) -> None:
        self._client = client
        self._prefix = prefix

    def _cache_key(self, key: str) -> str:
        """Generate full Redis key for cache entries."""
        return f"{self._prefix}:cache:{key}"

    async def get(self, key: str) -> CacheEntry[object] | None:
        """Get a cache entry by key."""
        data = await self._client.get(self._cache_key(key))
        if data is None:
            return None
        return _deserialize_entry(data)

    async def set(self, key: str, entry: CacheEntry[object]) -> None:
        """Store a cache entry that Redis expires once its gc window passes."""
        await self._client.set(
            self._cache_key(key),
            _serialize_entry(entry),
            pxat=entry.fetched_at + max(entry.gc_time, entry.stale_time),
        )

    async def delete(self, key: str) -> None:
        """Delete a cache entry."""
        await self._client.delete(self._cache_key(key))

    async def keys(self) -> list[str]:
        prefix = self._cache_key("")
        found: list[str] = []
        async for raw in self._client.scan_iter(match=f"{prefix}*", count=100):
            name = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            found.append(name[len(prefix) :])
        return found

    async def clear(self) -> None:
        """Clear all cached entries."""
        # Use SCAN to find and delete all cache keys
        cursor: int = 0
        pattern = self._cache_key("*")
        while True:
            cursor, keys = await self._client.scan(cursor, match=pattern, count=100)
            if keys:
                await self._client.delete(*keys)
            if cursor == 0:
                break

    async def disconnect(self) -> None:
        """Close the Redis connection."""
        await self._client.aclose()


class RedisChannel:
    """One pub/sub subscription to a table's change topic."""

    def __init__(
        self,
        pubsub: Any,  # redis.asyncio.client.PubSub
        topic: str,
        filter: RowFilter | None,
        events: tuple[EventType, ...],
    ) -> None:
        self._pubsub = pubsub
        self._topic = topic
        self.filter = filter
        self.events = events
        self.closed = False

    def _accepts(self, event: ChangeEvent) -> bool:
        if event.event_type not in self.events:
            return False
        return self.filter is None or self.filter.matches(event.row)

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        async for message in self._pubsub.listen():
            if self.closed:
                return
            if message.get("type") != "message":
                continue
            try:
                event = _deserialize_event(message["data"])
            except (ValueError, KeyError):
                logger.warning("Dropping malformed change message on %s", self._topic)
                continue
            if self._accepts(event):
                yield event

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._pubsub.unsubscribe(self._topic)
        await self._pubsub.aclose()


class RedisChannelHub:
    """Change feed over Redis pub/sub, one topic per table."""

    def __init__(
        self,
        client: Any,  # redis.asyncio.Redis
        *,
        prefix: str = "esgsync",
    ) -> None:
        self._client = client
        self._prefix = prefix

    def _topic(self, table: str) -> str:
        return f"{self._prefix}:changes:{table}"

    async def open_channel(
        self,
        table: str,
        filter: RowFilter | None = None,
        events: tuple[EventType, ...] = (
            EventType.INSERT,
            EventType.UPDATE,
            EventType.DELETE,
        ),
    ) -> RedisChannel:
        pubsub = self._client.pubsub()
        topic = self._topic(table)
        await pubsub.subscribe(topic)
        logger.debug("Subscribed to %s", topic)
        return RedisChannel(pubsub, topic, filter, events)

    async def publish(self, event: ChangeEvent) -> int:
        """Publish an event. Returns the number of receiving subscribers."""
        return int(
            await self._client.publish(self._topic(event.table), _serialize_event(event))
        )

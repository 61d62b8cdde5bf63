"""SmartCache - priority-aware cached fetches over an injectable store.

This module provides:
- SmartCache.fetch(): cached fetch with tier retries, stampede protection,
  related-key prefetch and optional background refetch
- SmartCache.query(): the same, returned as a QueryResult handle
- invalidate(), set_data(), get_data(): invalidation and raw escape hatches
- clear(), warm(), stats(): cache manager operations
- retain(), release(), collect_garbage(): observer-aware eviction
- start(), stop(): lifecycle
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, cast

from esgsync.adapters.base import AsyncCacheStore
from esgsync.duration import parse_duration
from esgsync.errors import FetchError
from esgsync.keys import deserialize_key, is_key_prefix, key_contains, serialize_key
from esgsync.policy import policy_for, retry_schedule
from esgsync.types import CacheEntry, CachePolicy, CacheStats, Duration, Priority, QueryKey

logger = logging.getLogger(__name__)

T = TypeVar("T")

Fetcher = Callable[[], Awaitable[Any]]
Clock = Callable[[], int]
Sleep = Callable[[float], Awaitable[None]]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class CacheInfo:
    """Where a query's data stands in the cache."""

    priority: Priority
    stale_time: int
    gc_time: int
    last_fetched: int | None
    is_cached: bool


class SmartCache:
    """Async cache wrapper applying priority tiers to remote fetches.

    Usage:
        cache = SmartCache(AsyncMemoryStore())
        orders = await cache.fetch(("orders", 5), load_orders, priority="high")
        await cache.invalidate(("orders",))
    """

    def __init__(
        self,
        store: AsyncCacheStore,
        *,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
        retry_budget: Duration | None = "60s",
    ) -> None:
        self._store = store
        self._clock = clock or _now_ms
        self._sleep = sleep or asyncio.sleep
        self._retry_budget = (
            parse_duration(retry_budget) if retry_budget is not None else None
        )
        self._in_flight: dict[str, asyncio.Future[Any]] = {}
        # Invalidations that landed while a key was loading
        self._load_invalidations: Counter[str] = Counter()
        self._background_tasks: set[asyncio.Task[None]] = set()
        self._observers: Counter[str] = Counter()
        self._idle_since: dict[str, int] = {}
        self._running = False

    @property
    def store(self) -> AsyncCacheStore:
        return self._store

    def now(self) -> int:
        """Current time in ms according to the cache's clock."""
        return self._clock()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        self._running = True
        logger.debug("SmartCache started with %s", type(self._store).__name__)

    async def stop(self) -> None:
        """Cancel background work and disconnect the store."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background_tasks.clear()
        self._observers.clear()
        self._running = False
        await self._store.disconnect()
        logger.debug("SmartCache stopped, cancelled %d background task(s)", len(tasks))

    async def __aenter__(self) -> SmartCache:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    @property
    def background_task_count(self) -> int:
        return len(self._background_tasks)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def fetch(
        self,
        key: QueryKey,
        fn: Callable[[], Awaitable[T]],
        *,
        priority: Priority | str = Priority.MEDIUM,
        stale_time: Duration | None = None,
        gc_time: Duration | None = None,
        max_retries: int | None = None,
        preload_related: Mapping[QueryKey, Fetcher] | None = None,
        background_refetch: bool = False,
    ) -> T:
        """Return fresh data for key, fetching it when missing or stale.

        Args:
            key: Query key identifying the remote resource
            fn: Async producer of the value
            priority: Tier supplying stale_time, gc_time and max_retries
            stale_time: Override for the tier's stale_time
            gc_time: Override for the tier's gc_time
            max_retries: Override for the tier's retry count
            preload_related: Related keys and their fetchers, prefetched
                after a successful read when not already cached
            background_refetch: Serve stale data immediately and refetch
                in the background instead of blocking

        Returns:
            Cached or freshly fetched data

        Raises:
            FetchError: When fn keeps failing after every allowed retry
        """
        key = tuple(key)
        priority = Priority(priority)
        policy = policy_for(
            priority, stale_time=stale_time, gc_time=gc_time, max_retries=max_retries
        )
        skey = serialize_key(key)

        entry = await self._store.get(skey)
        if entry is not None:
            self._idle_since[skey] = self._clock()
        if entry is not None and not entry.is_stale(self._clock()):
            data = cast(T, entry.data)
        elif entry is not None and background_refetch:
            logger.debug("Serving stale %s while refetching in background", skey)
            self._spawn(self._refresh_in_background(key, fn, priority, policy))
            data = cast(T, entry.data)
        else:
            data = await self._coalesce(
                skey, lambda: self._load(key, fn, priority, policy)
            )

        if preload_related:
            self._preload(preload_related, priority, policy)
        return data

    async def query(
        self,
        key: QueryKey,
        fn: Callable[[], Awaitable[T]],
        *,
        priority: Priority | str = Priority.MEDIUM,
        stale_time: Duration | None = None,
        gc_time: Duration | None = None,
        max_retries: int | None = None,
        preload_related: Mapping[QueryKey, Fetcher] | None = None,
        background_refetch: bool = False,
    ) -> QueryResult[T]:
        """Fetch like :meth:`fetch` but capture the outcome in a QueryResult.

        Usage:
            result = await cache.query(("goals",), load_goals, priority="high")
            if result.error is None:
                render(result.data)
        """
        result: QueryResult[T] = QueryResult(
            self,
            tuple(key),
            fn,
            priority=Priority(priority),
            stale_time=stale_time,
            gc_time=gc_time,
            max_retries=max_retries,
            preload_related=dict(preload_related or {}),
            background_refetch=background_refetch,
        )
        await result.refetch()
        return result

    async def get_data(self, key: QueryKey) -> Any | None:
        """Raw get - cached data regardless of freshness, or None."""
        entry = await self._store.get(serialize_key(tuple(key)))
        return None if entry is None else entry.data

    async def get_entry(self, key: QueryKey) -> CacheEntry[object] | None:
        return await self._store.get(serialize_key(tuple(key)))

    async def is_stale(self, key: QueryKey) -> bool:
        """Whether the next read of key would refetch."""
        entry = await self.get_entry(key)
        return entry is None or entry.is_stale(self._clock())

    async def prefetch(
        self,
        key: QueryKey,
        fn: Fetcher,
        *,
        priority: Priority | str = Priority.MEDIUM,
        stale_time: Duration | None = None,
        gc_time: Duration | None = None,
    ) -> None:
        """Load key into the cache unless fresh data is there already.

        Failures are logged and swallowed; prefetching is opportunistic.
        """
        try:
            await self.fetch(
                key, fn, priority=priority, stale_time=stale_time, gc_time=gc_time
            )
        except FetchError as e:
            logger.debug("Prefetch of %s failed: %s", serialize_key(tuple(key)), e)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def set_data(
        self,
        key: QueryKey,
        updater: Callable[[Any | None], Any],
        *,
        priority: Priority | str | None = None,
    ) -> Any:
        """Replace key's data with ``updater(old)``. Returns the new data.

        The entry keeps its previous policy, or takes the priority tier's
        when the key was not cached yet.
        """
        key = tuple(key)
        skey = serialize_key(key)
        old = await self._store.get(skey)
        new_data = updater(None if old is None else old.data)
        now = self._clock()
        if old is not None:
            entry: CacheEntry[object] = CacheEntry(
                key=key,
                data=new_data,
                fetched_at=now,
                priority=Priority(priority) if priority else old.priority,
                stale_time=old.stale_time,
                gc_time=old.gc_time,
            )
        else:
            tier = Priority(priority or Priority.MEDIUM)
            policy = policy_for(tier)
            entry = CacheEntry(
                key=key,
                data=new_data,
                fetched_at=now,
                priority=tier,
                stale_time=policy.stale_time,
                gc_time=policy.gc_time,
            )
        await self._store.set(skey, entry)
        self._idle_since[skey] = now
        return new_data

    async def invalidate(self, *keys: QueryKey) -> int:
        """Mark every entry prefixed by one of keys stale, keeping its data.

        By default, invalidating a key also invalidates all entries with
        longer keys it prefixes, so ``("orders",)`` covers ``("orders", 5)``.

        Returns:
            Number of entries newly marked stale
        """
        prefixes = [tuple(k) for k in keys]
        if not prefixes:
            return 0
        # A load already running returns pre-change data; store it as stale
        for skey in self._in_flight:
            if any(is_key_prefix(prefix, deserialize_key(skey)) for prefix in prefixes):
                self._load_invalidations[skey] += 1
        count = 0
        for skey in await self._store.keys():
            entry = await self._store.get(skey)
            if entry is None or entry.invalidated:
                continue
            if any(is_key_prefix(prefix, entry.key) for prefix in prefixes):
                await self._store.set(skey, dataclasses.replace(entry, invalidated=True))
                count += 1
        logger.debug(
            "Invalidated %d entr%s for %s",
            count,
            "y" if count == 1 else "ies",
            [serialize_key(p) for p in prefixes],
        )
        return count

    async def remove(self, key: QueryKey) -> None:
        """Raw delete - escape hatch for manual cache removal."""
        skey = serialize_key(tuple(key))
        await self._store.delete(skey)
        self._idle_since.pop(skey, None)

    # -------------------------------------------------------------------------
    # Cache manager
    # -------------------------------------------------------------------------

    async def clear(self, pattern: str | None = None) -> int:
        """Remove every entry, or those with a string segment containing pattern.

        Returns:
            Number of entries removed
        """
        keys = await self._store.keys()
        if pattern is None:
            await self._store.clear()
            self._idle_since.clear()
            return len(keys)
        removed = 0
        for skey in keys:
            entry = await self._store.get(skey)
            if entry is not None and key_contains(entry.key, pattern):
                await self._store.delete(skey)
                self._idle_since.pop(skey, None)
                removed += 1
        return removed

    async def warm(
        self,
        queries: Iterable[tuple[QueryKey, Fetcher]],
        *,
        stale_time: Duration = "5m",
    ) -> list[BaseException | None]:
        """Fetch many keys concurrently, collecting failures instead of raising.

        Returns:
            One outcome per query, in order: None on success, else the error
        """
        outcomes = await asyncio.gather(
            *(self.fetch(key, fn, stale_time=stale_time) for key, fn in queries),
            return_exceptions=True,
        )
        return [o if isinstance(o, BaseException) else None for o in outcomes]

    async def stats(self) -> CacheStats:
        now = self._clock()
        total = stale = 0
        for skey in await self._store.keys():
            entry = await self._store.get(skey)
            if entry is None:
                continue
            total += 1
            if entry.is_stale(now):
                stale += 1
        return CacheStats(total=total, stale=stale, fetching=len(self._in_flight))

    # -------------------------------------------------------------------------
    # Observers and garbage collection
    # -------------------------------------------------------------------------

    def retain(self, key: QueryKey) -> None:
        """Register an active observer of key; observed entries are never evicted."""
        self._observers[serialize_key(tuple(key))] += 1

    def release(self, key: QueryKey) -> None:
        skey = serialize_key(tuple(key))
        if self._observers[skey] <= 1:
            del self._observers[skey]
            self._idle_since[skey] = self._clock()
        else:
            self._observers[skey] -= 1

    def observer_count(self, key: QueryKey) -> int:
        return self._observers.get(serialize_key(tuple(key)), 0)

    async def collect_garbage(self) -> int:
        """Evict unobserved entries idle for longer than their gc_time.

        Returns:
            Number of entries evicted
        """
        now = self._clock()
        evicted = 0
        for skey in await self._store.keys():
            if self._observers.get(skey):
                continue
            entry = await self._store.get(skey)
            if entry is None:
                continue
            idle_since = self._idle_since.get(skey, entry.fetched_at)
            if now - idle_since >= entry.gc_time:
                await self._store.delete(skey)
                self._idle_since.pop(skey, None)
                evicted += 1
        if evicted:
            logger.debug("Garbage collected %d idle entries", evicted)
        return evicted

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _load(
        self,
        key: QueryKey,
        fn: Callable[[], Awaitable[T]],
        priority: Priority,
        policy: CachePolicy,
    ) -> T:
        """Call fn with the policy's retries, then store the result."""
        delays = retry_schedule(policy.max_retries, self._retry_budget)
        skey = serialize_key(key)
        invalidations = self._load_invalidations[skey]
        attempt = 0
        while True:
            try:
                data = await fn()
            except Exception as e:
                if attempt >= len(delays):
                    logger.debug(
                        "Fetch %s failed after %d attempt(s): %s",
                        serialize_key(key),
                        attempt + 1,
                        e,
                    )
                    raise FetchError(key, attempt + 1) from e
                delay = delays[attempt]
                logger.debug(
                    "Fetch %s failed (attempt %d/%d): %s. Retrying in %dms",
                    serialize_key(key),
                    attempt + 1,
                    len(delays) + 1,
                    e,
                    delay,
                )
                await self._sleep(delay / 1000)
                attempt += 1
                continue

            invalidated = self._load_invalidations.pop(skey, 0) != invalidations
            if invalidated:
                logger.debug("%s was invalidated while loading, storing as stale", skey)
            await self._store_entry(key, data, priority, policy, invalidated=invalidated)
            return data

    async def _store_entry(
        self,
        key: QueryKey,
        data: Any,
        priority: Priority,
        policy: CachePolicy,
        *,
        invalidated: bool = False,
    ) -> None:
        now = self._clock()
        skey = serialize_key(key)
        entry: CacheEntry[object] = CacheEntry(
            key=key,
            data=data,
            fetched_at=now,
            priority=priority,
            stale_time=policy.stale_time,
            gc_time=policy.gc_time,
            invalidated=invalidated,
        )
        await self._store.set(skey, entry)
        self._idle_since[skey] = now

    def _preload(
        self,
        related: Mapping[QueryKey, Fetcher],
        priority: Priority,
        policy: CachePolicy,
    ) -> None:
        """Prefetch related keys not yet cached, fresh for twice as long.

        gc_time is raised along with stale_time so fresh entries are not evicted.
        """
        stale_time = policy.stale_time * 2
        gc_time = max(policy.gc_time, stale_time)
        for related_key, related_fn in related.items():
            self._spawn(
                self._prefetch_if_missing(
                    tuple(related_key), related_fn, priority, stale_time, gc_time
                )
            )

    async def _prefetch_if_missing(
        self,
        key: QueryKey,
        fn: Fetcher,
        priority: Priority,
        stale_time: int,
        gc_time: int,
    ) -> None:
        skey = serialize_key(key)
        if skey in self._in_flight or await self._store.get(skey) is not None:
            return
        await self.prefetch(
            key, fn, priority=priority, stale_time=stale_time, gc_time=gc_time
        )

    async def _refresh_in_background(
        self,
        key: QueryKey,
        fn: Fetcher,
        priority: Priority,
        policy: CachePolicy,
    ) -> None:
        """Refresh cache entry in background."""
        skey = serialize_key(key)
        try:
            await self._coalesce(skey, lambda: self._load(key, fn, priority, policy))
        except FetchError as e:
            logger.warning("Background refetch of %s failed: %s", skey, e)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _coalesce(self, key: str, load: Callable[[], Awaitable[T]]) -> T:
        """Coalesce concurrent requests for same key (stampede protection)."""
        existing = self._in_flight.get(key)
        if existing is not None:
            return cast(T, await asyncio.shield(existing))

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await load()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            future.exception()  # Mark retrieved when nobody else is waiting
            raise
        else:
            future.set_result(result)
            return result
        finally:
            del self._in_flight[key]
            self._load_invalidations.pop(key, None)


class QueryResult(Generic[T]):
    """The state of one cached query plus the operations bound to it."""

    def __init__(
        self,
        cache: SmartCache,
        key: QueryKey,
        fn: Callable[[], Awaitable[T]],
        *,
        priority: Priority,
        stale_time: Duration | None,
        gc_time: Duration | None,
        max_retries: int | None,
        preload_related: dict[QueryKey, Fetcher],
        background_refetch: bool,
    ) -> None:
        self._cache = cache
        self.key = key
        self._fn = fn
        self.priority = priority
        self._policy = policy_for(
            priority, stale_time=stale_time, gc_time=gc_time, max_retries=max_retries
        )
        self._max_retries = max_retries
        self.preload_related = preload_related
        self._background_refetch = background_refetch
        self.data: T | None = None
        self.error: BaseException | None = None
        self.fetched_at: int | None = None
        self.is_loading = False

    @property
    def is_success(self) -> bool:
        return not self.is_loading and self.error is None and self.fetched_at is not None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    async def refetch(self) -> T | None:
        """Read through the cache again, updating data or error."""
        self.is_loading = True
        try:
            self.data = await self._cache.fetch(
                self.key,
                self._fn,
                priority=self.priority,
                stale_time=self._policy.stale_time,
                gc_time=self._policy.gc_time,
                max_retries=self._max_retries,
                preload_related=self.preload_related,
                background_refetch=self._background_refetch,
            )
            self.error = None
            entry = await self._cache.get_entry(self.key)
            self.fetched_at = entry.fetched_at if entry is not None else None
        except FetchError as e:
            self.error = e
        finally:
            self.is_loading = False
        return self.data

    async def invalidate(self) -> None:
        await self._cache.invalidate(self.key)

    async def invalidate_related(self) -> None:
        """Mark every related key stale without deleting its data."""
        if self.preload_related:
            await self._cache.invalidate(*self.preload_related)

    async def optimistic_update(self, updater: Callable[[T | None], T]) -> T:
        """Apply a local change now, then resync related keys on next read.

        Related entries are marked stale, not deleted.
        """
        new_data = cast(T, await self._cache.set_data(self.key, updater))
        self.data = new_data
        await self.invalidate_related()
        return new_data

    async def prefetch(self, key: QueryKey, fn: Fetcher) -> None:
        await self._cache.prefetch(
            key, fn, priority=self.priority, stale_time=self._policy.stale_time
        )

    async def cache_info(self) -> CacheInfo:
        entry = await self._cache.get_entry(self.key)
        return CacheInfo(
            priority=self.priority,
            stale_time=self._policy.stale_time,
            gc_time=self._policy.gc_time,
            last_fetched=entry.fetched_at if entry is not None else None,
            is_cached=entry is not None,
        )


__all__ = ["CacheInfo", "QueryResult", "SmartCache"]

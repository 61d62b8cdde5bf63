"""Debounced realtime multiplexer.

Turns bursts of change-feed events into one cache invalidation per
(table, query key) and debounce window, under a fixed subscription budget.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass

from esgsync.adapters.base import Channel, ChannelProvider
from esgsync.duration import to_seconds
from esgsync.keys import debounce_key
from esgsync.notify import LoggingNotifier, Notifier
from esgsync.smart_cache import SmartCache
from esgsync.types import (
    ChangeEvent,
    ConnectionStatus,
    Duration,
    EventType,
    SubscriptionConfig,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_SUBSCRIPTIONS = 10
HEALTHY_ACTIVITY_WINDOW = 60_000  # ms

DEFAULT_TABLE_LABELS: Mapping[str, str] = {
    "calculated_emissions": "Emissions",
    "licenses": "Licenses",
    "goals": "Goals",
    "assets": "Assets",
}

EVENT_LABELS: Mapping[EventType, str] = {
    EventType.INSERT: "created",
    EventType.UPDATE: "updated",
    EventType.DELETE: "removed",
}


@dataclass
class PendingDebounce:
    """The single outstanding timer for one debounce key."""

    debounce_key: str
    handle: asyncio.TimerHandle
    scheduled_at: int
    config: SubscriptionConfig
    event: ChangeEvent


@dataclass(frozen=True, slots=True)
class ConnectionInfo:
    status: ConnectionStatus
    last_activity: int
    active_channels: int
    is_healthy: bool


class RealtimeMultiplexer:
    """Subscribes to change feeds and debounces their cache invalidations.

    Usage:
        mux = RealtimeMultiplexer(cache, hub, debounce="100ms")
        async with mux.subscribe([SubscriptionConfig("orders", ("orders", 5))]):
            ...
    """

    def __init__(
        self,
        cache: SmartCache,
        channels: ChannelProvider,
        *,
        max_subscriptions: int = DEFAULT_MAX_SUBSCRIPTIONS,
        debounce: Duration = "500ms",
        notifier: Notifier | None = None,
        table_labels: Mapping[str, str] | None = None,
    ) -> None:
        if max_subscriptions < 0:
            raise ValueError("max_subscriptions must be >= 0")
        self._cache = cache
        self._provider = channels
        self._max_subscriptions = max_subscriptions
        self._debounce = to_seconds(debounce)
        self._notifier = notifier or LoggingNotifier()
        self._table_labels = dict(
            DEFAULT_TABLE_LABELS if table_labels is None else table_labels
        )
        self._subscriptions: list[tuple[SubscriptionConfig, Channel]] = []
        self._consumers: list[asyncio.Task[None]] = []
        self._flushes: set[asyncio.Task[None]] = set()
        self._pending: dict[str, PendingDebounce] = {}
        self._status = ConnectionStatus.DISCONNECTED
        self._last_activity = cache.now()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, configs: Iterable[SubscriptionConfig]) -> int:
        """Open one channel per enabled config, up to the subscription budget.

        Configs beyond the budget are not subscribed and do not raise.

        Returns:
            Number of channels opened
        """
        if self._subscriptions:
            raise RuntimeError("RealtimeMultiplexer is already started")

        enabled = [c for c in configs if c.enabled]
        accepted = enabled[: self._max_subscriptions]
        if len(enabled) > len(accepted):
            logger.debug(
                "Subscription budget %d reached, not subscribing %d config(s)",
                self._max_subscriptions,
                len(enabled) - len(accepted),
            )

        self._status = ConnectionStatus.CONNECTING
        try:
            for config in accepted:
                channel = await self._provider.open_channel(
                    config.table, config.filter, config.events
                )
                self._subscriptions.append((config, channel))
                self._cache.retain(config.query_key)
                self._consumers.append(
                    asyncio.create_task(
                        self._consume(config, channel),
                        name=f"realtime-{config.table}-{len(self._consumers)}",
                    )
                )
        except Exception:
            logger.exception("Opening change feeds failed")
            await self.stop()
            raise

        self._status = ConnectionStatus.CONNECTED
        logger.debug("Realtime multiplexer subscribed to %d channel(s)", len(accepted))
        return len(accepted)

    async def stop(self) -> None:
        """Close every channel and clear every pending timer."""
        for pending in self._pending.values():
            pending.handle.cancel()
        self._pending.clear()

        tasks = [*self._consumers, *self._flushes]
        for task in tasks:
            task.cancel()

        for config, channel in self._subscriptions:
            try:
                await channel.close()
            except Exception:
                logger.warning("Closing channel for %s failed", config.table, exc_info=True)
            self._cache.release(config.query_key)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._subscriptions.clear()
        self._consumers.clear()
        self._flushes.clear()
        self._status = ConnectionStatus.DISCONNECTED

    @asynccontextmanager
    async def subscribe(
        self, configs: Iterable[SubscriptionConfig]
    ) -> AsyncIterator[RealtimeMultiplexer]:
        """Start for the duration of a ``async with`` block."""
        await self.start(configs)
        try:
            yield self
        finally:
            await self.stop()

    # -------------------------------------------------------------------------
    # Public state
    # -------------------------------------------------------------------------

    @property
    def active_subscription_count(self) -> int:
        return len(self._subscriptions)

    @property
    def pending_timer_count(self) -> int:
        return len(self._pending)

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED

    @property
    def last_activity(self) -> int:
        return self._last_activity

    def connection_info(self) -> ConnectionInfo:
        return ConnectionInfo(
            status=self._status,
            last_activity=self._last_activity,
            active_channels=len(self._subscriptions),
            is_healthy=self.is_connected
            and self._cache.now() - self._last_activity < HEALTHY_ACTIVITY_WINDOW,
        )

    async def force_refresh(self) -> None:
        """Invalidate every configured key now, bypassing the debounce."""
        keys = [config.query_key for config, _ in self._subscriptions]
        if keys:
            await self._cache.invalidate(*keys)
        self._last_activity = self._cache.now()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _consume(self, config: SubscriptionConfig, channel: Channel) -> None:
        try:
            async for event in channel:
                self._on_event(config, event)
        except Exception:
            logger.exception("Change feed for %s failed", config.table)
            self._status = ConnectionStatus.DISCONNECTED

    def _on_event(self, config: SubscriptionConfig, event: ChangeEvent) -> None:
        """Cancel-and-restart the debounce timer for the event's key."""
        now = self._cache.now()
        self._last_activity = now
        key = debounce_key(config.table, config.query_key)

        previous = self._pending.pop(key, None)
        if previous is not None:
            previous.handle.cancel()

        delay = to_seconds(config.debounce) if config.debounce is not None else self._debounce
        handle = asyncio.get_running_loop().call_later(delay, self._fire, key)
        self._pending[key] = PendingDebounce(
            debounce_key=key,
            handle=handle,
            scheduled_at=now,
            config=config,
            event=event,
        )
        logger.debug(
            "%s on %s, invalidation of %s in %.3fs",
            event.event_type.value,
            config.table,
            key,
            delay,
        )

    def _fire(self, key: str) -> None:
        pending = self._pending.pop(key, None)
        if pending is None:
            return
        task = asyncio.create_task(self._flush(pending.config, pending.event))
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)

    async def _flush(self, config: SubscriptionConfig, event: ChangeEvent) -> None:
        """Invalidate the config's key and deliver the last event of the burst."""
        try:
            await self._cache.invalidate(config.query_key)
        except Exception as e:
            logger.warning("Invalidating %s failed: %s", config.query_key, e)
            self._notifier.error("Realtime update failed", str(e))

        callback = config.callback_for(event.event_type)
        if callback is not None:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "%s callback for %s failed", event.event_type.value, config.table
                )

        label = self._table_labels.get(config.table)
        if label is not None:
            self._notifier.info(
                f"{label} {EVENT_LABELS[event.event_type]}",
                "Data refreshed automatically",
            )


__all__ = [
    "ConnectionInfo",
    "DEFAULT_TABLE_LABELS",
    "PendingDebounce",
    "RealtimeMultiplexer",
]

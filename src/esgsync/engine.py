"""DataSync - wires the cache, change feeds, polling and auto-save together."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from contextlib import suppress
from typing import Any

from esgsync.adapters.base import AsyncCacheStore, ChannelProvider
from esgsync.adapters.memory import AsyncMemoryStore, MemoryChannelHub
from esgsync.adapters.rest import AsyncRestBackend
from esgsync.autosave import AutoSaveReconciler
from esgsync.config import SyncSettings
from esgsync.duration import to_seconds
from esgsync.errors import SaveError
from esgsync.notify import LoggingNotifier, Notifier
from esgsync.realtime import RealtimeMultiplexer
from esgsync.refresh import RefreshController
from esgsync.smart_cache import Clock, SmartCache
from esgsync.types import (
    DraftSaveState,
    Duration,
    QueryKey,
    SaveStatus,
    SubscriptionConfig,
    Writer,
)

logger = logging.getLogger(__name__)


class DataSync:
    """One application's data layer, with a single start/stop lifecycle.

    Usage:
        async with DataSync(load_settings("esgsync.yaml")) as sync:
            goals = await sync.cache.query(("goals",), load_goals, priority="high")
            await sync.subscribe([SubscriptionConfig("goals", ("goals",))])
            saver = sync.auto_save(report_id, table="gri_reports", initial=report)
    """

    def __init__(
        self,
        settings: SyncSettings | None = None,
        *,
        store: AsyncCacheStore | None = None,
        channels: ChannelProvider | None = None,
        backend: AsyncRestBackend | None = None,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings or SyncSettings()
        self.cache = SmartCache(
            store or AsyncMemoryStore(max_items=self.settings.cache.max_items),
            clock=clock,
            retry_budget=self.settings.cache.retry_budget,
        )
        self.channels: ChannelProvider = channels or MemoryChannelHub()
        self.notifier: Notifier = notifier or LoggingNotifier()

        self._owns_backend = backend is None and bool(self.settings.backend.url)
        if self._owns_backend:
            backend = AsyncRestBackend(
                self.settings.backend.api_key,
                base_url=self.settings.backend.url,
                timeout=self.settings.backend.timeout_seconds,
            )
        self.backend = backend

        self._multiplexers: list[RealtimeMultiplexer] = []
        self._controllers: list[RefreshController] = []
        self._reconcilers: list[AutoSaveReconciler] = []
        self._gc_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        await self.cache.start()
        self._gc_task = asyncio.create_task(self._collect_garbage(), name="cache-gc")
        logger.info("Data sync started")

    async def stop(self) -> None:
        """Tear down every component this instance created."""
        for multiplexer in self._multiplexers:
            await multiplexer.stop()
        for controller in self._controllers:
            await controller.stop()
        for reconciler in self._reconcilers:
            await reconciler.stop()
        self._multiplexers.clear()
        self._controllers.clear()
        self._reconcilers.clear()

        if self._gc_task is not None:
            self._gc_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._gc_task
            self._gc_task = None

        await self.cache.stop()
        if self._owns_backend and self.backend is not None:
            await self.backend.disconnect()
        logger.info("Data sync stopped")

    async def __aenter__(self) -> DataSync:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def subscribe(self, configs: Iterable[SubscriptionConfig]) -> RealtimeMultiplexer:
        """Start a realtime multiplexer for configs, stopped with this instance."""
        realtime = self.settings.realtime
        multiplexer = RealtimeMultiplexer(
            self.cache,
            self.channels,
            max_subscriptions=realtime.max_subscriptions,
            debounce=realtime.debounce,
            notifier=self.notifier,
            table_labels=realtime.table_labels,
        )
        await multiplexer.start(configs)
        self._multiplexers.append(multiplexer)
        return multiplexer

    async def auto_refresh(
        self, keys: Iterable[QueryKey], *, interval: Duration | None = None
    ) -> RefreshController:
        """Start polling keys, by default at the configured interval."""
        controller = RefreshController(
            self.cache,
            keys,
            interval=interval if interval is not None else self.settings.refresh.interval,
            notifier=self.notifier,
        )
        await controller.start()
        self._controllers.append(controller)
        return controller

    def auto_save(
        self,
        record_id: str,
        *,
        table: str | None = None,
        writer: Writer | None = None,
        initial: Mapping[str, Any] | None = None,
        id_column: str = "id",
        on_success: Callable[[DraftSaveState], Any] | None = None,
        on_error: Callable[[SaveError], Any] | None = None,
        on_status_change: Callable[[SaveStatus], Any] | None = None,
    ) -> AutoSaveReconciler:
        """Create an auto-saver writing through ``writer`` or the backend table.

        Successful table writes invalidate the ``(table, record_id)`` cache key.
        """
        if (table is None) == (writer is None):
            raise ValueError("auto_save needs exactly one of table or writer")
        if writer is None:
            if self.backend is None:
                raise ValueError("auto_save(table=...) requires a configured backend")
            writer = self._table_writer(self.backend, str(table), id_column)

        autosave = self.settings.autosave
        reconciler = AutoSaveReconciler(
            record_id,
            writer,
            initial=initial,
            debounce=autosave.debounce,
            saved_display=autosave.saved_display,
            error_display=autosave.error_display,
            on_success=on_success,
            on_error=on_error,
            on_status_change=on_status_change,
            notifier=self.notifier,
            clock=self.cache.now,
        )
        self._reconcilers.append(reconciler)
        return reconciler

    def _table_writer(
        self, backend: AsyncRestBackend, table: str, id_column: str
    ) -> Writer:
        write_row = backend.writer_for(table, id_column=id_column)

        async def write(record_id: str, update: dict[str, Any]) -> Any:
            result = await write_row(record_id, update)
            await self.cache.invalidate((table, record_id))
            return result

        return write

    async def _collect_garbage(self) -> None:
        interval = to_seconds(self.settings.cache.gc_interval)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cache.collect_garbage()
            except Exception:
                logger.exception("Cache garbage collection failed")

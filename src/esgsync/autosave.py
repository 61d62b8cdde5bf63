"""Debounced auto-save for long-lived draft records.

Edits accumulate in a pending update; a debounce timer writes them once
the user pauses. Writes for one record never overlap, and a draft whose
content hash matches the last saved content is not written at all.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from esgsync.duration import to_seconds
from esgsync.errors import SaveError
from esgsync.notify import LoggingNotifier, Notifier
from esgsync.types import DraftSaveState, Duration, SaveStatus, Writer

logger = logging.getLogger(__name__)


def content_hash(content: Mapping[str, Any]) -> str:
    """Stable short hash of a JSON-compatible mapping."""
    return hashlib.sha256(
        json.dumps(content, sort_keys=True, default=str).encode()
    ).hexdigest()[:16]


class AutoSaveReconciler:
    """Owns the save timer and write path of one draft record.

    Usage:
        saver = AutoSaveReconciler("report-1", backend.writer_for("gri_reports"))
        saver.schedule_auto_save({"ceo_message": text})
        ...
        await saver.force_save()  # before navigating away
        await saver.stop()
    """

    def __init__(
        self,
        record_id: str,
        writer: Writer,
        *,
        initial: Mapping[str, Any] | None = None,
        debounce: Duration = "3s",
        saved_display: Duration = "2s",
        error_display: Duration = "5s",
        on_success: Callable[[DraftSaveState], Any] | None = None,
        on_error: Callable[[SaveError], Any] | None = None,
        on_status_change: Callable[[SaveStatus], Any] | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.record_id = record_id
        self._writer = writer
        self._saved_content: dict[str, Any] = dict(initial or {})
        self._last_saved_hash = (
            content_hash(self._saved_content) if initial is not None else None
        )
        self._debounce = to_seconds(debounce)
        self._saved_display = to_seconds(saved_display)
        self._error_display = to_seconds(error_display)
        self._on_success = on_success
        self._on_error = on_error
        self._on_status_change = on_status_change
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock or (lambda: int(time.time() * 1000))

        self._status = SaveStatus.IDLE
        self._is_saving = False
        self._last_save_time: int | None = None
        self._pending_update: dict[str, Any] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._reset_timer: asyncio.TimerHandle | None = None
        self._saves: set[asyncio.Task[bool]] = set()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def status(self) -> SaveStatus:
        return self._status

    @property
    def is_saving(self) -> bool:
        return self._is_saving

    @property
    def last_save_time(self) -> int | None:
        return self._last_save_time

    @property
    def has_pending(self) -> bool:
        """True while a debounced save is scheduled but has not fired."""
        return self._timer is not None

    @property
    def pending_timer_count(self) -> int:
        return int(self._timer is not None) + int(self._reset_timer is not None)

    @property
    def saved_content(self) -> dict[str, Any]:
        return dict(self._saved_content)

    @property
    def state(self) -> DraftSaveState:
        return DraftSaveState(
            record_id=self.record_id,
            last_saved_hash=self._last_saved_hash,
            is_saving=self._is_saving,
            status=self._status,
            last_save_time=self._last_save_time,
        )

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def schedule_auto_save(self, update: Mapping[str, Any]) -> None:
        """Merge update into the pending edits and restart the debounce timer."""
        self._cancel_timer()
        self._pending_update = {**(self._pending_update or {}), **update}
        self._timer = asyncio.get_running_loop().call_later(self._debounce, self._fire)
        logger.debug(
            "Auto-save for %s scheduled in %.3fs", self.record_id, self._debounce
        )

    async def force_save(self, update: Mapping[str, Any] | None = None) -> DraftSaveState:
        """Save pending edits (plus update) now, skipping the debounce."""
        self._cancel_timer()
        merged = {**(self._pending_update or {}), **(update or {})}
        self._pending_update = None
        await self.save(merged)
        return self.state

    async def save(self, update: Mapping[str, Any]) -> bool:
        """Write update unless a write is already running or nothing changed.

        A request arriving while a write is in flight is dropped, not queued;
        the next edit schedules another save.

        Returns:
            True when the draft is persisted (written or unchanged)
        """
        if self._is_saving:
            logger.debug("Save for %s already in flight, dropping request", self.record_id)
            return False

        self._is_saving = True
        self._cancel_reset_timer()
        try:
            draft = {**self._saved_content, **update}
            digest = content_hash(draft)
            if not update or digest == self._last_saved_hash:
                logger.debug("No changes for %s, skipping write", self.record_id)
                self._set_status(SaveStatus.SAVED)
                self._schedule_reset(self._saved_display)
                return True

            self._set_status(SaveStatus.SAVING)
            try:
                await self._writer(self.record_id, dict(update))
            except Exception as e:
                logger.warning("Auto-save for %s failed: %s", self.record_id, e)
                error = SaveError(self.record_id, dict(update))
                error.__cause__ = e
                self._set_status(SaveStatus.ERROR)
                self._report_error(error)
                self._schedule_reset(self._error_display)
                return False

            self._saved_content = draft
            self._last_saved_hash = digest
            self._last_save_time = self._clock()
            self._set_status(SaveStatus.SAVED)
            logger.info("Saved record %s", self.record_id)
            if self._on_success is not None:
                self._on_success(self.state)
            self._schedule_reset(self._saved_display)
            return True
        finally:
            self._is_saving = False

    async def stop(self) -> None:
        """Clear every timer and wait for a running write to finish.

        Pending edits are discarded; call :meth:`force_save` first to keep them.
        """
        self._cancel_timer()
        self._cancel_reset_timer()
        self._pending_update = None
        if self._saves:
            await asyncio.gather(*self._saves, return_exceptions=True)
        self._cancel_reset_timer()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _fire(self) -> None:
        self._timer = None
        update = self._pending_update or {}
        self._pending_update = None
        task = asyncio.create_task(self.save(update))
        self._saves.add(task)
        task.add_done_callback(self._saves.discard)

    def _report_error(self, error: SaveError) -> None:
        if self._on_error is not None:
            self._on_error(error)
        else:
            self._notifier.warning(
                "Save failed", "Your changes were not saved automatically"
            )

    def _set_status(self, status: SaveStatus) -> None:
        if status is self._status:
            return
        logger.debug("Record %s: %s -> %s", self.record_id, self._status.value, status.value)
        self._status = status
        if self._on_status_change is not None:
            self._on_status_change(status)

    def _schedule_reset(self, delay: float) -> None:
        self._cancel_reset_timer()
        self._reset_timer = asyncio.get_running_loop().call_later(delay, self._reset)

    def _reset(self) -> None:
        self._reset_timer = None
        self._set_status(SaveStatus.IDLE)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _cancel_reset_timer(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None


__all__ = ["AutoSaveReconciler", "content_hash"]

"""User-visible notifications (toast equivalents)."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

NOTIFICATION_LOGGER_NAME = "esgsync.notifications"


@runtime_checkable
class Notifier(Protocol):
    """Surfaces short, human-readable messages to the user."""

    def info(self, title: str, description: str | None = None) -> None: ...

    def warning(self, title: str, description: str | None = None) -> None: ...

    def error(self, title: str, description: str | None = None) -> None: ...


class LoggingNotifier:
    """Notifier that writes notifications to a dedicated logger."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(NOTIFICATION_LOGGER_NAME)

    def _emit(self, level: int, title: str, description: str | None) -> None:
        if description:
            self._logger.log(level, "%s: %s", title, description)
        else:
            self._logger.log(level, "%s", title)

    def info(self, title: str, description: str | None = None) -> None:
        self._emit(logging.INFO, title, description)

    def warning(self, title: str, description: str | None = None) -> None:
        self._emit(logging.WARNING, title, description)

    def error(self, title: str, description: str | None = None) -> None:
        self._emit(logging.ERROR, title, description)

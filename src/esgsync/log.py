"""Logging setup for applications embedding esgsync.

Only the ``esgsync`` logger tree is configured; the host application's root
handlers are left alone.
"""

from __future__ import annotations

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from esgsync.config import LoggingSettings

PACKAGE_LOGGER_NAME = "esgsync"
LOG_FORMAT = "[%(asctime)s][%(levelname)s][%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Marks handlers installed here, so a second call replaces only those
_HANDLER_MARKER = "_esgsync_handler"


def _resolve_level(name: str) -> int:
    level = logging.getLevelNamesMapping().get(name.upper())
    if level is None:
        raise ValueError(f"Invalid logging level: {name}")
    return level


def _file_handler(path: Path, backup_count: int) -> logging.Handler:
    """Daily rotating file handler, one dated backup per day."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        filename=str(path),
        when="midnight",
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.suffix = "%Y-%m-%d"
    return handler


def init_logging(
    settings: LoggingSettings, *, logger_name: str = PACKAGE_LOGGER_NAME
) -> logging.Logger:
    """Attach a stream handler, and a file handler when configured, to esgsync's logger.

    Calling it again swaps the handlers it installed before. Records stop
    propagating to the root logger so they are not written twice.

    Returns:
        The configured logger
    """
    level = _resolve_level(settings.level)
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False

    for handler in [h for h in logger.handlers if getattr(h, _HANDLER_MARKER, False)]:
        logger.removeHandler(handler)
        handler.close()

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    file_path = settings.file_path.strip()
    if file_path:
        try:
            handlers.append(_file_handler(Path(file_path), settings.backup_count))
        except OSError:
            logger.warning("Cannot log to %s, using the stream only", file_path, exc_info=True)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_MARKER, True)
        logger.addHandler(handler)
    return logger


__all__ = ["init_logging"]

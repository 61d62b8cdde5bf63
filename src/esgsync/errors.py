"""Exception hierarchy for esgsync."""

from __future__ import annotations

from typing import Any

from esgsync.types import QueryKey


class SyncError(Exception):
    """Base class for all esgsync errors."""


class FetchError(SyncError):
    """A fetch kept failing after every retry allowed by its policy."""

    def __init__(self, key: QueryKey, attempts: int) -> None:
        super().__init__(f"Fetch for {list(key)!r} failed after {attempts} attempt(s)")
        self.key = key
        self.attempts = attempts


class BackendError(SyncError):
    """The remote backend answered with a non-success status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class SaveError(SyncError):
    """An auto-save write for a draft record failed."""

    def __init__(self, record_id: str, update: dict[str, Any]) -> None:
        super().__init__(f"Saving record {record_id!r} failed")
        self.record_id = record_id
        self.update = update


class ConfigError(SyncError):
    """A configuration file could not be read or validated."""

"""Core types for the esgsync data layer."""

from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")

# Ordered tuple of primitive segments, e.g. ("orders", 5)
QueryKey = tuple[Any, ...]

# Duration type alias
Duration = str | int  # "30s", "5m", "2h", "1d" or milliseconds


class Priority(str, enum.Enum):
    """Cache priority tier."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class EventType(str, enum.Enum):
    """Row-level change kinds emitted by a change feed."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SaveStatus(str, enum.Enum):
    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


class ConnectionStatus(str, enum.Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True, slots=True)
class CachePolicy:
    """Staleness, eviction and retry settings for one cache entry."""

    stale_time: int  # ms
    gc_time: int  # ms
    max_retries: int


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    """A cached value with metadata. Replaced wholesale, never mutated."""

    key: QueryKey
    data: T
    fetched_at: int  # Unix timestamp ms
    priority: Priority
    stale_time: int  # ms
    gc_time: int  # ms
    invalidated: bool = False

    def is_stale(self, now: int) -> bool:
        """Stale once invalidated or once stale_time has elapsed."""
        return self.invalidated or now - self.fetched_at >= self.stale_time


@dataclass(frozen=True, slots=True)
class RowFilter:
    """Equality filter on one column of a change feed."""

    column: str
    value: Any

    def matches(self, row: dict[str, Any] | None) -> bool:
        if not row or self.column not in row:
            return False
        return str(row[self.column]) == str(self.value)


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """One row-level change notification."""

    table: str
    event_type: EventType
    new: dict[str, Any] = field(default_factory=dict)
    old: dict[str, Any] = field(default_factory=dict)
    commit_timestamp: str | None = None

    @property
    def row(self) -> dict[str, Any]:
        """The row the event is about (``old`` for deletes)."""
        return self.old if self.event_type is EventType.DELETE else self.new


ChangeCallback = Callable[[ChangeEvent], Any]

# Persists a partial update of one record: (record_id, update) -> result
Writer = Callable[[str, dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class SubscriptionConfig:
    """Declares interest in a table's change feed for one query key."""

    table: str
    query_key: QueryKey
    filter: RowFilter | None = None
    enabled: bool = True
    events: tuple[EventType, ...] = (
        EventType.INSERT,
        EventType.UPDATE,
        EventType.DELETE,
    )
    debounce: Duration | None = None  # overrides the multiplexer default
    on_insert: ChangeCallback | None = None
    on_update: ChangeCallback | None = None
    on_delete: ChangeCallback | None = None

    def callback_for(self, event_type: EventType) -> ChangeCallback | None:
        if event_type is EventType.INSERT:
            return self.on_insert
        if event_type is EventType.UPDATE:
            return self.on_update
        return self.on_delete


@dataclass(frozen=True, slots=True)
class DraftSaveState:
    """Snapshot of an auto-saved record's save status."""

    record_id: str
    last_saved_hash: str | None
    is_saving: bool
    status: SaveStatus
    last_save_time: int | None  # Unix timestamp ms


@dataclass(frozen=True, slots=True)
class CacheStats:
    total: int
    stale: int
    fetching: int

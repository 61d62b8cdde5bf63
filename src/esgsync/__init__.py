"""esgsync - priority-aware caching, debounced realtime invalidation and auto-save."""

from contextlib import suppress

# Adapters (async only)
from esgsync.adapters import (
    AsyncCacheStore,
    AsyncMemoryStore,
    Channel,
    ChannelProvider,
    MemoryChannelHub,
)
from esgsync.autosave import AutoSaveReconciler, content_hash
from esgsync.config import SyncSettings, load_settings

# Duration parsing
from esgsync.duration import parse_duration
from esgsync.engine import DataSync
from esgsync.errors import BackendError, ConfigError, FetchError, SaveError, SyncError
from esgsync.notify import LoggingNotifier, Notifier
from esgsync.policy import PRIORITY_POLICIES, policy_for, retry_delay
from esgsync.realtime import ConnectionInfo, RealtimeMultiplexer
from esgsync.refresh import RefreshController
from esgsync.smart_cache import QueryResult, SmartCache

# Core types
from esgsync.types import (
    CacheEntry,
    CachePolicy,
    ChangeEvent,
    ConnectionStatus,
    DraftSaveState,
    Duration,
    EventType,
    Priority,
    QueryKey,
    RowFilter,
    SaveStatus,
    SubscriptionConfig,
)

# Optional adapter imports - only available when dependencies are installed
with suppress(ImportError):
    from esgsync.adapters import AsyncRedisStore, RedisChannelHub

with suppress(ImportError):
    from esgsync.adapters import AsyncRestBackend

__version__ = "0.1.0"

__all__ = [
    "PRIORITY_POLICIES",
    "AsyncCacheStore",
    "AsyncMemoryStore",
    "AsyncRedisStore",
    "AsyncRestBackend",
    "AutoSaveReconciler",
    "BackendError",
    "CacheEntry",
    "CachePolicy",
    "ChangeEvent",
    "Channel",
    "ChannelProvider",
    "ConfigError",
    "ConnectionInfo",
    "ConnectionStatus",
    "DataSync",
    "DraftSaveState",
    "Duration",
    "EventType",
    "FetchError",
    "LoggingNotifier",
    "MemoryChannelHub",
    "Notifier",
    "Priority",
    "QueryKey",
    "QueryResult",
    "RealtimeMultiplexer",
    "RedisChannelHub",
    "RefreshController",
    "RowFilter",
    "SaveError",
    "SaveStatus",
    "SmartCache",
    "SubscriptionConfig",
    "SyncError",
    "SyncSettings",
    "content_hash",
    "load_settings",
    "parse_duration",
    "policy_for",
    "retry_delay",
]

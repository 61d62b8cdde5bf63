"""Cache stores, change feeds and backend adapters."""

from contextlib import suppress

from esgsync.adapters.base import (
    AsyncCacheStore,
    Channel,
    ChannelProvider,
)
from esgsync.adapters.memory import AsyncMemoryStore, MemoryChannel, MemoryChannelHub

# Optional adapters - only available when dependencies are installed
with suppress(ImportError):
    from esgsync.adapters.redis import AsyncRedisStore, RedisChannelHub

with suppress(ImportError):
    from esgsync.adapters.rest import AsyncRestBackend

__all__ = [
    "AsyncCacheStore",
    "AsyncMemoryStore",
    "AsyncRedisStore",
    "AsyncRestBackend",
    "Channel",
    "ChannelProvider",
    "MemoryChannel",
    "MemoryChannelHub",
    "RedisChannelHub",
]

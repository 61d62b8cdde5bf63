"""Query key serialization and matching."""

import json
from collections.abc import Iterable

from esgsync.types import QueryKey


def serialize_key(key: QueryKey) -> str:
    """Serialize a query key to its canonical string form.

    Two keys are the same logical resource iff their serialized forms are
    equal, so ``("orders", 5)`` and ``("orders", "5")`` are distinct.
    """
    return json.dumps(list(key), separators=(",", ":"), sort_keys=True, default=str)


def deserialize_key(serialized: str) -> QueryKey:
    """Turn a serialized key back into a tuple."""
    parts = json.loads(serialized)
    if not isinstance(parts, list):
        raise ValueError(f"Not a serialized query key: {serialized!r}")
    return tuple(parts)


def is_key_prefix(parent: QueryKey, child: QueryKey) -> bool:
    """Check if parent is a prefix of child (for invalidation)."""
    if len(parent) > len(child):
        return False
    return serialize_key(child[: len(parent)]) == serialize_key(parent)


def key_prefixes(key: QueryKey) -> Iterable[QueryKey]:
    """Yield every non-empty prefix of key, shortest first, key included."""
    for i in range(1, len(key) + 1):
        yield key[:i]


def key_contains(key: QueryKey, pattern: str) -> bool:
    """Check if any string segment of key contains pattern."""
    return any(isinstance(part, str) and pattern in part for part in key)


def debounce_key(table: str, key: QueryKey) -> str:
    """Build the debounce key for a (table, query key) pair."""
    return f"{table}-{serialize_key(key)}"

"""Priority tiers and retry backoff for cached fetches."""

from __future__ import annotations

import logging
from types import MappingProxyType

from esgsync.duration import parse_duration
from esgsync.types import CachePolicy, Duration, Priority

logger = logging.getLogger(__name__)

PRIORITY_POLICIES: MappingProxyType[Priority, CachePolicy] = MappingProxyType(
    {
        Priority.HIGH: CachePolicy(
            stale_time=5 * 60_000, gc_time=30 * 60_000, max_retries=3
        ),
        Priority.MEDIUM: CachePolicy(
            stale_time=10 * 60_000, gc_time=20 * 60_000, max_retries=2
        ),
        Priority.LOW: CachePolicy(
            stale_time=15 * 60_000, gc_time=10 * 60_000, max_retries=1
        ),
    }
)

RETRY_BASE_DELAY = 1000  # ms
RETRY_MAX_DELAY = 30_000  # ms


def policy_for(
    priority: Priority | str = Priority.MEDIUM,
    *,
    stale_time: Duration | None = None,
    gc_time: Duration | None = None,
    max_retries: int | None = None,
) -> CachePolicy:
    """Resolve the policy for a priority tier, applying explicit overrides.

    Overrides always win over the tier default, including zero values.
    """
    tier = PRIORITY_POLICIES[Priority(priority)]
    policy = CachePolicy(
        stale_time=parse_duration(stale_time)
        if stale_time is not None
        else tier.stale_time,
        gc_time=parse_duration(gc_time) if gc_time is not None else tier.gc_time,
        max_retries=max_retries if max_retries is not None else tier.max_retries,
    )
    if policy.max_retries < 0:
        raise ValueError("max_retries must be >= 0")
    if policy.gc_time < policy.stale_time:
        logger.debug(
            "gc_time %sms is shorter than stale_time %sms for %s priority; "
            "unobserved entries may be evicted while still fresh",
            policy.gc_time,
            policy.stale_time,
            Priority(priority).value,
        )
    return policy


def retry_delay(attempt: int) -> int:
    """Backoff in ms before retry number ``attempt`` (0-indexed)."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    return min(RETRY_BASE_DELAY * 2**attempt, RETRY_MAX_DELAY)


def retry_schedule(max_retries: int, budget: Duration | None = None) -> list[int]:
    """Backoff delays (ms) for up to ``max_retries`` retries.

    With a budget, the schedule stops at the first retry whose cumulative
    waiting time would exceed it.
    """
    budget_ms = parse_duration(budget) if budget is not None else None
    delays: list[int] = []
    total = 0
    for attempt in range(max_retries):
        delay = retry_delay(attempt)
        if budget_ms is not None and total + delay > budget_ms:
            break
        delays.append(delay)
        total += delay
    return delays

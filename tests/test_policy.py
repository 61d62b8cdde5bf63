"""Tests for priority tiers and retry backoff."""

import pytest

from esgsync import PRIORITY_POLICIES, CachePolicy, Priority, policy_for, retry_delay
from esgsync.policy import retry_schedule

MINUTE = 60_000


class TestPriorityTiers:
    @pytest.mark.parametrize(
        ("priority", "stale", "gc", "retries"),
        [
            (Priority.HIGH, 5 * MINUTE, 30 * MINUTE, 3),
            (Priority.MEDIUM, 10 * MINUTE, 20 * MINUTE, 2),
            (Priority.LOW, 15 * MINUTE, 10 * MINUTE, 1),
        ],
    )
    def test_tier_defaults(
        self, priority: Priority, stale: int, gc: int, retries: int
    ) -> None:
        assert policy_for(priority) == CachePolicy(
            stale_time=stale, gc_time=gc, max_retries=retries
        )
        assert PRIORITY_POLICIES[priority] == policy_for(priority)

    def test_default_priority_is_medium(self) -> None:
        assert policy_for() == PRIORITY_POLICIES[Priority.MEDIUM]

    def test_accepts_string_priority(self) -> None:
        assert policy_for("high") == PRIORITY_POLICIES[Priority.HIGH]

    def test_overrides_take_precedence(self) -> None:
        policy = policy_for(Priority.HIGH, stale_time="1m", gc_time=0, max_retries=0)
        assert policy == CachePolicy(stale_time=MINUTE, gc_time=0, max_retries=0)

    def test_unknown_priority(self) -> None:
        with pytest.raises(ValueError):
            policy_for("urgent")

    def test_negative_retries_rejected(self) -> None:
        with pytest.raises(ValueError, match="max_retries"):
            policy_for(max_retries=-1)


class TestRetryDelay:
    def test_exponential(self) -> None:
        assert [retry_delay(n) for n in range(5)] == [1000, 2000, 4000, 8000, 16000]

    def test_capped_at_thirty_seconds(self) -> None:
        assert retry_delay(5) == 30_000
        assert retry_delay(20) == 30_000

    def test_negative_attempt(self) -> None:
        with pytest.raises(ValueError):
            retry_delay(-1)


class TestRetrySchedule:
    def test_without_budget(self) -> None:
        assert retry_schedule(3) == [1000, 2000, 4000]
        assert retry_schedule(0) == []

    def test_budget_truncates(self) -> None:
        # 1s + 2s fit in 5s, the 4s retry would not
        assert retry_schedule(3, "5s") == [1000, 2000]

    def test_zero_budget_disables_retries(self) -> None:
        assert retry_schedule(3, 0) == []

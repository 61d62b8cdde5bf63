"""Tests for the polling / manual refresh controller."""

import asyncio

import pytest

from esgsync import RefreshController, SmartCache


class BrokenCache(SmartCache):
    async def invalidate(self, *keys) -> int:
        raise ConnectionError("store unreachable")


class BlockingCache(SmartCache):
    """Cache whose invalidate() waits until released."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.gate = asyncio.Event()

    async def invalidate(self, *keys) -> int:
        await self.gate.wait()
        return await super().invalidate(*keys)


class TestManualRefresh:
    async def test_refresh_invalidates_every_key(self, counting_cache) -> None:
        controller = RefreshController(
            counting_cache, [("orders",), ("goals", "c1")], interval="30s"
        )
        assert controller.last_refresh is None

        await controller.refresh()

        assert sorted(counting_cache.invalidations) == [("goals", "c1"), ("orders",)]
        assert controller.last_refresh is not None
        assert not controller.is_refreshing

    async def test_last_refresh_uses_cache_clock(self, cache, clock) -> None:
        controller = RefreshController(cache, [("orders",)], interval="30s")
        await controller.refresh()
        assert controller.last_refresh == clock.now

    async def test_is_refreshing_while_in_flight(self, store) -> None:
        cache = BlockingCache(store)
        controller = RefreshController(cache, [("orders",)], interval="30s")

        first = asyncio.create_task(controller.refresh())
        second = asyncio.create_task(controller.refresh())
        await asyncio.sleep(0)
        assert controller.is_refreshing

        cache.gate.set()
        await asyncio.gather(first, second)
        assert not controller.is_refreshing

    async def test_failure_notifies_and_raises(self, store, notifier) -> None:
        controller = RefreshController(
            BrokenCache(store), [("orders",)], interval="30s", notifier=notifier
        )

        with pytest.raises(ConnectionError):
            await controller.refresh()

        assert notifier.messages == [("error", "Refresh failed", "store unreachable")]
        assert controller.last_refresh is None
        assert not controller.is_refreshing


class TestPolling:
    @pytest.mark.parametrize("interval", [0, "0s", -5])
    def test_interval_must_be_positive(self, counting_cache, interval) -> None:
        with pytest.raises(ValueError):
            RefreshController(counting_cache, [("orders",)], interval=interval)

    async def test_polls_on_interval(self, counting_cache) -> None:
        controller = RefreshController(counting_cache, [("orders",)], interval="50ms")
        await controller.start()
        assert controller.is_running
        await asyncio.sleep(0.13)
        await controller.stop()

        assert counting_cache.invalidations == [("orders",), ("orders",)]
        assert not controller.is_running

    async def test_stop_halts_polling(self, counting_cache) -> None:
        controller = RefreshController(counting_cache, [("orders",)], interval="30ms")
        await controller.start()
        await controller.stop()
        await asyncio.sleep(0.08)
        assert counting_cache.invalidations == []

    async def test_failed_tick_keeps_polling(self, store, notifier) -> None:
        controller = RefreshController(
            BrokenCache(store), [("orders",)], interval="30ms", notifier=notifier
        )
        await controller.start()
        await asyncio.sleep(0.1)
        assert controller.is_running
        await controller.stop()

        assert len(notifier.messages) >= 2
        assert set(notifier.messages) == {
            ("error", "Automatic refresh failed", "store unreachable")
        }

    async def test_start_is_idempotent(self, counting_cache) -> None:
        controller = RefreshController(counting_cache, [("orders",)], interval="50ms")
        await controller.start()
        await controller.start()
        await asyncio.sleep(0.07)
        await controller.stop()
        assert counting_cache.invalidations == [("orders",)]

"""Shared pytest fixtures."""

import asyncio

import pytest

from esgsync import AsyncMemoryStore, MemoryChannelHub, SmartCache


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingSleep:
    """Stands in for asyncio.sleep and records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str, str | None]] = []

    def info(self, title: str, description: str | None = None) -> None:
        self.messages.append(("info", title, description))

    def warning(self, title: str, description: str | None = None) -> None:
        self.messages.append(("warning", title, description))

    def error(self, title: str, description: str | None = None) -> None:
        self.messages.append(("error", title, description))


class CountingCache(SmartCache):
    """SmartCache that records every invalidate() call."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.invalidations: list[tuple] = []

    async def invalidate(self, *keys) -> int:
        self.invalidations.extend(tuple(k) for k in keys)
        return await super().invalidate(*keys)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store() -> AsyncMemoryStore:
    """Create a fresh AsyncMemoryStore for each test."""
    return AsyncMemoryStore()


@pytest.fixture
def cache(store: AsyncMemoryStore, clock: FakeClock, sleep: RecordingSleep) -> SmartCache:
    return SmartCache(store, clock=clock, sleep=sleep)


@pytest.fixture
def counting_cache(store: AsyncMemoryStore) -> CountingCache:
    """A real-time cache that records invalidations."""
    return CountingCache(store)


@pytest.fixture
def hub() -> MemoryChannelHub:
    return MemoryChannelHub()

"""Shared fixtures for roomsync tests."""

import asyncio
from collections.abc import AsyncIterator

import fakeredis
import pytest
import pytest_asyncio

from roomsync.latency import LatencyEstimator
from roomsync.models import DriverState, Role
from roomsync.session import RoomSyncSession
from roomsync.store import RedisSyncStore


class FakeClock:
    """Manually advanced wall clock in milliseconds."""

    def __init__(self, start: float = 1_700_000_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeDriver:
    """In-memory playback driver that records every command."""

    def __init__(
        self, position_ms: int = 0, is_paused: bool = False, track_id: str | None = "track-1"
    ) -> None:
        self.state: DriverState | None = DriverState(position_ms, is_paused, track_id)
        self.calls: list[tuple] = []
        self.fail_with: Exception | None = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def get_current_state(self) -> DriverState | None:
        self.calls.append(("get_current_state",))
        self._check()
        return self.state

    async def seek(self, position_ms: int) -> None:
        self.calls.append(("seek", position_ms))
        self._check()

    async def play(self) -> None:
        self.calls.append(("play",))
        self._check()

    async def pause(self) -> None:
        self.calls.append(("pause",))
        self._check()

    @property
    def commands(self) -> list[tuple]:
        """Calls that change playback, i.e. everything but state polls."""
        return [c for c in self.calls if c[0] != "get_current_state"]


class BlockingDriver(FakeDriver):
    """FakeDriver whose selected calls wait until ``release`` is set."""

    def __init__(self, *args, block: tuple[str, ...] = (), **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.block = set(block)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.completed: list[str] = []

    async def _hold(self, name: str) -> None:
        if name in self.block:
            self.entered.set()
            await self.release.wait()
        self.completed.append(name)

    async def get_current_state(self) -> DriverState | None:
        await self._hold("get_current_state")
        return await super().get_current_state()

    async def seek(self, position_ms: int) -> None:
        await self._hold("seek")
        await super().seek(position_ms)

    async def play(self) -> None:
        await self._hold("play")
        await super().play()

    async def pause(self) -> None:
        await self._hold("pause")
        await super().pause()


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll predicate until it holds or the timeout expires."""

    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest_asyncio.fixture(name="redis")
async def redis_fixture() -> AsyncIterator[fakeredis.FakeAsyncRedis]:
    """Fresh in-memory Redis for each test."""
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    try:
        yield client
    finally:
        await client.flushall()
        await client.aclose()


@pytest.fixture(name="store")
def store_fixture(redis: fakeredis.FakeAsyncRedis) -> RedisSyncStore:
    return RedisSyncStore(redis)


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="driver")
def driver_fixture() -> FakeDriver:
    return FakeDriver()


@pytest.fixture(name="estimator")
def estimator_fixture(store: RedisSyncStore, clock: FakeClock) -> LatencyEstimator:
    return LatencyEstimator(store, clock=clock)


@pytest.fixture(name="member_session")
def member_session_fixture() -> RoomSyncSession:
    return RoomSyncSession(room_id="123456", role=Role.MEMBER, participant_id="member-1")


@pytest.fixture(name="owner_session")
def owner_session_fixture() -> RoomSyncSession:
    return RoomSyncSession(room_id="123456", role=Role.OWNER, participant_id="owner-1")

"""Tests for the sync loop controller lifecycle."""

import asyncio
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest
from conftest import BlockingDriver, FakeDriver

from roomsync.controller import SyncConfig, SyncLoopController
from roomsync.models import DriverState, Role, Snapshot
from roomsync.session import SyncState
from roomsync.utils import now_ms

FAST = 0.01


def _config(participant_id: str, **kwargs) -> SyncConfig:
    return SyncConfig(participant_id=participant_id, sync_interval=FAST, **kwargs)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(FAST)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture(autouse=True)
def _fixed_audio_latency():
    with patch("roomsync.latency._query_output_latency_s", return_value=None):
        yield


def test_config_validation():
    with pytest.raises(ValueError):
        SyncConfig(participant_id="p", sync_interval=0)
    with pytest.raises(ValueError):
        SyncConfig(participant_id="p", latency_interval=0.5)


@pytest.mark.asyncio
async def test_initial_state(store):
    controller = SyncLoopController(store, _config("owner-1"))
    assert controller.state == SyncState.STOPPED
    assert controller.session is None
    assert controller.is_connected is False
    assert controller.last_sync_time is None
    assert controller.sync_errors == []
    assert controller.latency_info.sample_count == 0
    assert await controller.manual_sync() is False


@pytest.mark.asyncio
async def test_owner_publishes_and_member_follows(store):
    owner_driver = FakeDriver(position_ms=90_000, is_paused=False)
    member_driver = FakeDriver(position_ms=10_000, is_paused=True)

    async with (
        SyncLoopController(store, _config("owner-1")) as owner,
        SyncLoopController(store, _config("member-1")) as member,
    ):
        owner_session = await owner.start("123456", Role.OWNER, owner_driver)
        assert owner_session.state == SyncState.STARTING
        await _wait_for(lambda: owner.state == SyncState.RUNNING)
        assert owner.is_connected

        await member.start("123456", Role.MEMBER, member_driver)
        await _wait_for(lambda: ("play",) in member_driver.commands)

        seeks = [c[1] for c in member_driver.commands if c[0] == "seek"]
        assert seeks
        assert seeks[0] >= 90_000 - 1_000
        assert member.state == SyncState.RUNNING
        assert member.last_sync_time is not None

    assert owner.state == SyncState.STOPPED
    assert member.state == SyncState.STOPPED
    assert owner.is_connected is False


@pytest.mark.asyncio
async def test_member_without_snapshot_stays_idle(store, driver):
    async with SyncLoopController(store, _config("member-1")) as controller:
        await controller.start("123456", Role.MEMBER, driver)
        await _wait_for(lambda: controller.state == SyncState.RUNNING)
        await asyncio.sleep(5 * FAST)

        assert driver.calls == []
        assert controller.last_sync_time is None
        assert controller.is_connected


@pytest.mark.asyncio
async def test_stop_is_idempotent(store, driver):
    controller = SyncLoopController(store, _config("owner-1"))
    await controller.stop()

    await controller.start("123456", Role.OWNER, driver)
    await controller.stop()
    await controller.stop()

    assert controller.state == SyncState.STOPPED
    calls = len(driver.calls)
    await asyncio.sleep(5 * FAST)
    assert len(driver.calls) == calls


@pytest.mark.asyncio
async def test_stop_removes_latency_entry(store):
    store.ping = AsyncMock(return_value=12.0)
    controller = SyncLoopController(store, _config("member-1"))
    await controller.start("123456", Role.MEMBER, FakeDriver())
    await _wait_for(lambda: controller.latency_info.sample_count > 0)
    assert controller.latency_info.current_ms == 12.0
    for _ in range(200):
        if await store.get_member_latency("123456", "member-1") > 0:
            break
        await asyncio.sleep(FAST)
    assert await store.get_member_latency("123456", "member-1") == 12.0

    await controller.stop()
    assert await store.get_member_latency("123456", "member-1") == 0.0


@pytest.mark.asyncio
async def test_invalid_room_reports_error(store, driver):
    controller = SyncLoopController(store, _config("member-1"))
    session = await controller.start("  ", Role.MEMBER, driver)

    assert session.state == SyncState.STOPPED
    assert controller.is_connected is False
    assert "invalid room id" in controller.sync_errors[0]
    await asyncio.sleep(5 * FAST)
    assert driver.calls == []


@pytest.mark.asyncio
async def test_restart_with_new_role(store, driver):
    async with SyncLoopController(store, _config("p-1")) as controller:
        first = await controller.start("123456", Role.OWNER, driver)
        await _wait_for(lambda: controller.state == SyncState.RUNNING)

        second = await controller.start("123456", Role.MEMBER, driver)
        assert first.state == SyncState.STOPPED
        assert second is controller.session
        assert second.role == Role.MEMBER


@pytest.mark.asyncio
async def test_repeated_failures_disconnect(store):
    driver = FakeDriver()
    controller = SyncLoopController(store, _config("owner-1", max_consecutive_failures=3))
    await controller.start("123456", Role.OWNER, driver)
    await _wait_for(lambda: controller.is_connected)

    driver.fail_with = RuntimeError("player crashed")
    await _wait_for(lambda: not controller.is_connected)
    assert 1 <= len(controller.sync_errors) <= 5
    assert "player crashed" in controller.sync_errors[-1]

    driver.fail_with = None
    await _wait_for(lambda: controller.is_connected)

    controller.clear_errors()
    assert controller.sync_errors == []
    await controller.stop()


@pytest.mark.asyncio
async def test_manual_sync_runs_immediately(store):
    await store.put_snapshot("123456", Snapshot(60_000, now_ms(), False))
    driver = FakeDriver(position_ms=0, is_paused=True)
    config = SyncConfig(participant_id="member-1", sync_interval=3600)

    async with SyncLoopController(store, config) as controller:
        await controller.start("123456", Role.MEMBER, driver)
        await _wait_for(lambda: controller.state == SyncState.RUNNING)
        driver.calls.clear()
        driver.state = DriverState(0, True)

        assert await controller.manual_sync() is True
        assert driver.commands == [("seek", 60_000)]


@pytest.mark.asyncio
async def test_hooks_run_on_start_and_stop(store, driver):
    config = _config("owner-1", start_hook="on-start", stop_hook="on-stop")
    with patch("roomsync.controller.run_hook", new=AsyncMock(return_value=0)) as run_hook:
        controller = SyncLoopController(store, config)
        await controller.start("123456", Role.OWNER, driver)
        await controller.stop()

    events = [call.kwargs["event"] for call in run_hook.await_args_list]
    assert events == ["start", "stop"]
    assert run_hook.await_args_list[0].args == ("on-start",)
    assert run_hook.await_args_list[0].kwargs["role"] == "owner"


@pytest.mark.asyncio
async def test_stop_from_inside_tick(store):
    controller = SyncLoopController(store, _config("owner-1"))
    stopped = asyncio.Event()

    class StoppingDriver(FakeDriver):
        async def get_current_state(self):
            await controller.stop()
            stopped.set()
            return await super().get_current_state()

    await controller.start("123456", Role.OWNER, StoppingDriver())
    await asyncio.wait_for(stopped.wait(), 2.0)
    await asyncio.sleep(5 * FAST)
    assert controller.state == SyncState.STOPPED
    assert controller.is_connected is False


@pytest.mark.asyncio
async def test_stop_completes_under_rapid_ticks(store):
    driver = FakeDriver(position_ms=1_000)
    config = SyncConfig(participant_id="owner-1", sync_interval=0.001)
    for _ in range(20):
        controller = SyncLoopController(store, config)
        await controller.start("123456", Role.OWNER, driver)
        sync_task = controller._sync_task
        await asyncio.sleep(0.005)

        await asyncio.wait_for(asyncio.shield(controller.stop()), 1.0)
        assert controller.state == SyncState.STOPPED
        assert sync_task.done()


@pytest.mark.asyncio
async def test_manual_sync_overtaken_by_stop_sends_nothing(store):
    await store.put_snapshot("123456", Snapshot(60_000, now_ms(), True))
    driver = BlockingDriver(position_ms=0, is_paused=True)
    config = SyncConfig(participant_id="member-1", sync_interval=3600)
    controller = SyncLoopController(store, config)
    await controller.start("123456", Role.MEMBER, driver)
    await _wait_for(lambda: controller.state == SyncState.RUNNING)
    last_sync = controller.last_sync_time

    driver.calls.clear()
    driver.block.add("get_current_state")
    manual = asyncio.create_task(controller.manual_sync())
    await driver.entered.wait()
    await controller.stop()
    driver.release.set()

    assert await manual is False
    assert driver.commands == []
    assert controller.last_sync_time == last_sync
    assert controller.is_connected is False


@pytest.mark.asyncio
async def test_latency_loop_refreshes_audio_latency(store, driver):
    readings = iter([0.1])
    with patch(
        "roomsync.latency._query_output_latency_s", side_effect=lambda: next(readings, 0.3)
    ):
        async with SyncLoopController(store, _config("member-1")) as controller:
            await controller.start("123456", Role.MEMBER, driver)
            assert controller.estimator.audio_latency_ms == pytest.approx(120.0)

            await _wait_for(lambda: controller.latency_info.audio_latency_ms > 300.0)
            assert controller.latency_info.audio_latency_ms == pytest.approx(320.0)


@pytest.mark.asyncio
async def test_failed_hook_is_recorded(store, driver):
    config = _config("owner-1", start_hook="exit 4")
    async with SyncLoopController(store, config) as controller:
        await controller.start("123456", Role.OWNER, driver)
        assert "Hook error: start hook exited with status 4" in controller.sync_errors


@pytest.mark.asyncio
async def test_status_endpoint_served_while_open(store, driver, unused_tcp_port):
    config = _config("member-1", status_port=unused_tcp_port)
    url = f"http://127.0.0.1:{unused_tcp_port}/status"
    async with SyncLoopController(store, config) as controller:
        await controller.start("123456", Role.MEMBER, driver)
        async with aiohttp.ClientSession() as http, http.get(url) as response:
            data = await response.json()
        assert data["room_id"] == "123456"
        assert data["role"] == "member"

    async with aiohttp.ClientSession() as http:
        with pytest.raises(aiohttp.ClientConnectionError):
            await http.get(url)

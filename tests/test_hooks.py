"""Tests for external hook commands."""

import pytest

from roomsync.hooks import hook_environment, run_hook


@pytest.mark.asyncio
async def test_hook_receives_environment(tmp_path):
    output = tmp_path / "env.txt"
    status = await run_hook(
        f'echo "$ROOMSYNC_EVENT $ROOMSYNC_ROOM $ROOMSYNC_ROLE $ROOMSYNC_PARTICIPANT" > {output}',
        event="start",
        room_id="123456",
        role="member",
        participant_id="member-1",
    )
    assert status == 0
    assert output.read_text().strip() == "start 123456 member member-1"


def test_environment_omits_unset_values(monkeypatch):
    monkeypatch.delenv("ROOMSYNC_ROOM", raising=False)
    env = hook_environment("stop", role="owner")
    assert env["ROOMSYNC_EVENT"] == "stop"
    assert env["ROOMSYNC_ROLE"] == "owner"
    assert "ROOMSYNC_ROOM" not in env


@pytest.mark.asyncio
async def test_failing_hook_returns_exit_status(caplog):
    assert await run_hook("exit 3", event="stop") == 3
    assert "stop hook failed (exit 3)" in caplog.text


@pytest.mark.asyncio
async def test_slow_hook_is_killed(caplog):
    assert await run_hook("exec sleep 5", event="start", timeout=0.1) is None
    assert "did not finish" in caplog.text

"""Hook execution for external script integration."""

from __future__ import annotations

import asyncio
import logging
import os

logger = logging.getLogger(__name__)

HOOK_TIMEOUT_SECONDS = 10.0


def hook_environment(
    event: str,
    room_id: str | None = None,
    role: str | None = None,
    participant_id: str | None = None,
) -> dict[str, str]:
    """Build the environment passed to hook commands."""
    env = os.environ.copy()
    env["ROOMSYNC_EVENT"] = event
    for name, value in (
        ("ROOMSYNC_ROOM", room_id),
        ("ROOMSYNC_ROLE", role),
        ("ROOMSYNC_PARTICIPANT", participant_id),
    ):
        if value:
            env[name] = value
    return env


async def run_hook(
    command: str,
    *,
    event: str,
    room_id: str | None = None,
    role: str | None = None,
    participant_id: str | None = None,
    timeout: float = HOOK_TIMEOUT_SECONDS,
) -> int | None:
    """Execute a hook command for a session lifecycle event.

    Args:
        command: Shell command to execute.
        event: Lifecycle event ("start" or "stop").
        room_id: Room being synced.
        role: Local role in the room ("owner" or "member").
        participant_id: Local participant identifier.
        timeout: Seconds to wait before the hook is killed.

    Returns:
        The hook's exit status, or None if it could not be run to completion.
    """
    env = hook_environment(event, room_id, role, participant_id)
    logger.debug("Running %s hook for room %s: %s", event, room_id, command)

    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError:
        logger.exception("Failed to launch %s hook: %s", event, command)
        return None

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except TimeoutError:
        logger.warning(
            "%s hook did not finish within %.1fs, killing it: %s", event, timeout, command
        )
        proc.kill()
        await proc.wait()
        return None

    if proc.returncode != 0:
        logger.warning(
            "%s hook failed (exit %d): %s\nstderr: %s",
            event,
            proc.returncode,
            command,
            stderr.decode().strip() if stderr else "(empty)",
        )
    elif stdout:
        logger.debug("%s hook output: %s", event, stdout.decode().strip())
    return proc.returncode

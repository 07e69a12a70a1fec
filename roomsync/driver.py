"""Playback driver interface.

A playback driver wraps the local media engine. The sync core only polls its
state and issues seek/play/pause commands; any of these may fail or hang, so
callers bound them with their own timeouts.
"""

from __future__ import annotations

from typing import Protocol

from roomsync.models import DriverState


class PlaybackDriver(Protocol):
    """Capabilities the sync core needs from the local media engine."""

    async def get_current_state(self) -> DriverState | None:
        """Return the current playback state, or None if nothing is loaded."""
        ...

    async def seek(self, position_ms: int) -> None:
        """Seek to position_ms."""
        ...

    async def play(self) -> None:
        """Resume playback."""
        ...

    async def pause(self) -> None:
        """Pause playback."""
        ...

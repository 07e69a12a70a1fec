"""Per-room sync session state."""

from __future__ import annotations

import collections
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from roomsync.models import LatencyStats, Role

MAX_RECENT_ERRORS = 5


class SyncState(str, Enum):
    """Lifecycle of a sync session."""

    STOPPED = "stopped"
    STARTING = "starting"
    """Scheduled, waiting for the first successful tick."""
    RUNNING = "running"


@dataclass
class RoomSyncSession:
    """Mutable record of the local participant's sync loop for one room.

    Written by the loop controller and its tick logic, read by status and UI
    code. Never shared with other participants.
    """

    room_id: str
    role: Role
    participant_id: str
    state: SyncState = SyncState.STARTING
    is_connected: bool = False
    last_sync_at: float | None = None
    latency: LatencyStats = field(default_factory=LatencyStats)
    recent_errors: collections.deque[str] = field(
        default_factory=lambda: collections.deque(maxlen=MAX_RECENT_ERRORS)
    )

    @property
    def is_active(self) -> bool:
        """False once the session has been stopped; stopped sessions never resume."""
        return self.state != SyncState.STOPPED

    def record_error(self, message: str) -> None:
        """Append to the bounded error ring, dropping the oldest entry."""
        self.recent_errors.append(message)

    def clear_errors(self) -> None:
        """Forget all recorded errors."""
        self.recent_errors.clear()

    def mark_synced(self, timestamp_ms: float) -> None:
        """Record the time of the last completed tick."""
        self.last_sync_at = timestamp_ms

    @property
    def errors(self) -> list[str]:
        """Recorded errors, oldest first."""
        return list(self.recent_errors)

    def to_dict(self) -> dict[str, Any]:
        """Convert the session to a JSON-ready dictionary."""
        return {
            "room_id": self.room_id,
            "role": self.role.value,
            "participant_id": self.participant_id,
            "state": self.state.value,
            "is_connected": self.is_connected,
            "last_sync_at": self.last_sync_at,
            "latency": self.latency.to_dict(),
            "errors": self.errors,
        }

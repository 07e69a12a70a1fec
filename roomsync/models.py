"""Data model shared by the publisher, reconciler and latency estimator."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Role of the local participant in a room."""

    OWNER = "owner"
    """Publishes the authoritative playback position."""

    MEMBER = "member"
    """Tracks the owner's position."""


def _as_number(value: Any) -> float | None:
    """Return value as a finite float, or None if it is not numeric."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Owner-published playback position.

    Attributes:
        position_ms: Owner's playback position when the snapshot was taken.
        published_at: Wall-clock time of the publish (ms since epoch).
        is_playing: Whether the owner was playing.
        owner_write_latency_ms: Owner's most recent store round trip, if known.
    """

    position_ms: int
    published_at: float
    is_playing: bool
    owner_write_latency_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert the snapshot to a JSON-ready dictionary."""
        return {
            "position_ms": self.position_ms,
            "published_at": self.published_at,
            "is_playing": self.is_playing,
            "owner_write_latency_ms": self.owner_write_latency_ms,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Snapshot | None:
        """Decode a stored snapshot record.

        Out-of-range fields are clamped or defaulted. Records without a usable
        position or timestamp cannot be extrapolated and decode to None.
        """
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed snapshot: %r", data)
            return None

        position = _as_number(data.get("position_ms"))
        published_at = _as_number(data.get("published_at"))
        if position is None or published_at is None:
            logger.warning("Ignoring snapshot without position or timestamp: %r", data)
            return None

        latency = _as_number(data.get("owner_write_latency_ms"))
        if latency is not None and latency < 0:
            latency = None

        return cls(
            position_ms=max(0, int(position)),
            published_at=published_at,
            # Only a real boolean true means playing; "false" strings stay paused
            is_playing=data.get("is_playing") is True,
            owner_write_latency_ms=latency,
        )


@dataclass(frozen=True, slots=True)
class LatencySample:
    """A single store round-trip measurement."""

    round_trip_ms: float
    measured_at: float


@dataclass(frozen=True, slots=True)
class LatencyStats:
    """Smoothed latency figures exposed to the reconciler and status surface."""

    current_ms: float = 0.0
    average_ms: float = 0.0
    jitter_ms: float = 0.0
    is_stable: bool = False
    sample_count: int = 0
    audio_latency_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert the stats to a JSON-ready dictionary."""
        return {
            "current_ms": self.current_ms,
            "average_ms": self.average_ms,
            "jitter_ms": self.jitter_ms,
            "is_stable": self.is_stable,
            "sample_count": self.sample_count,
            "audio_latency_ms": self.audio_latency_ms,
        }


@dataclass(frozen=True, slots=True)
class DriverState:
    """Local playback state reported by a playback driver."""

    position_ms: int
    is_paused: bool
    track_id: str | None = None

"""Round-trip and audio output latency estimation.

Latency changes slowly compared to playback drift, so these measurements run
on their own cadence rather than on every sync tick.
"""

from __future__ import annotations

import asyncio
import collections
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Final

import numpy as np

from roomsync.models import LatencySample, LatencyStats
from roomsync.utils import now_ms

if TYPE_CHECKING:
    from roomsync.store import SyncStore

logger = logging.getLogger(__name__)

# sounddevice raises OSError on import when the PortAudio library is missing
AUDIO_AVAILABLE = False
try:
    import sounddevice

    AUDIO_AVAILABLE = True
except (ImportError, OSError):
    pass

DEFAULT_AUDIO_LATENCY_MS: Final[float] = 150.0
"""Assumed audio output latency when the device does not report one."""
AUDIO_PLATFORM_OVERHEAD_MS: Final[float] = 20.0
"""Fixed scheduling overhead added on top of the device's reported latency."""
MIN_AUDIO_LATENCY_MS: Final[float] = 50.0
MAX_AUDIO_LATENCY_MS: Final[float] = 500.0

JITTER_THRESHOLD_MS: Final[float] = 50.0
"""Jitter below which the connection can be considered stable."""
STABILITY_THRESHOLD_MS: Final[float] = 20.0
"""Maximum deviation of the current sample from the average when stable."""


def _query_output_latency_s() -> float | None:
    """Return the default output device's reported latency in seconds."""
    if not AUDIO_AVAILABLE:
        return None
    try:
        device = sounddevice.query_devices(kind="output")
    except (sounddevice.PortAudioError, ValueError) as e:
        logger.debug("No default output device: %s", e)
        return None
    latency = device.get("default_high_output_latency")
    if latency is None:
        return None
    return float(latency)


def estimate_audio_latency() -> float:
    """Estimate the delay between issuing a play/seek and hearing it.

    Uses the default output device's reported latency plus a fixed overhead,
    falling back to DEFAULT_AUDIO_LATENCY_MS. The result is clamped to a
    plausible range.
    """
    try:
        latency_s = _query_output_latency_s()
    except Exception:
        logger.exception("Failed to query audio output latency")
        latency_s = None

    if latency_s is None:
        estimate = DEFAULT_AUDIO_LATENCY_MS
    else:
        estimate = latency_s * 1000.0 + AUDIO_PLATFORM_OVERHEAD_MS
    return min(max(estimate, MIN_AUDIO_LATENCY_MS), MAX_AUDIO_LATENCY_MS)


class LatencyEstimator:
    """Measures store round-trip time and estimates local audio latency.

    Keeps a rolling window of round-trip samples from which current, average
    and jitter figures are derived.
    """

    def __init__(
        self,
        store: SyncStore,
        *,
        window: int = 10,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        """Initialize the estimator.

        Args:
            store: Store to probe for round-trip time.
            window: Number of samples kept for statistics.
            clock: Wall-clock source in milliseconds.
        """
        self._store = store
        self._clock = clock
        self._samples: collections.deque[LatencySample] = collections.deque(maxlen=window)
        self.audio_latency_ms: float = DEFAULT_AUDIO_LATENCY_MS

    @property
    def current_ms(self) -> float | None:
        """Most recent round-trip sample, or None before the first one."""
        if not self._samples:
            return None
        return self._samples[-1].round_trip_ms

    async def measure_round_trip(self) -> float:
        """Measure one store round trip in ms; 0.0 if the probe fails."""
        try:
            return await self._store.ping()
        except Exception as e:
            logger.warning("Round trip measurement failed: %s", e)
            return 0.0

    async def sample(self) -> float:
        """Measure a round trip and add it to the window if it succeeded."""
        round_trip = await self.measure_round_trip()
        if round_trip > 0:
            self._samples.append(LatencySample(round_trip, self._clock()))
            logger.debug("RTT: %.1fms", round_trip)
        return round_trip

    async def report(self, room_id: str, participant_id: str) -> None:
        """Publish the current round trip into the room's latency map."""
        current = self.current_ms
        if current is None:
            return
        try:
            await self._store.put_member_latency(room_id, participant_id, current)
        except Exception as e:
            logger.warning("Failed to report latency for %s: %s", participant_id, e)

    async def refresh_audio_latency(self) -> float:
        """Refresh the audio latency estimate without blocking the event loop.

        The device query can block for a while, so it runs in the default
        executor. A changed output device is picked up on the next refresh.
        """
        loop = asyncio.get_running_loop()
        estimate = await loop.run_in_executor(None, estimate_audio_latency)
        if estimate != self.audio_latency_ms:
            logger.debug("Audio latency estimate: %.1fms", estimate)
        self.audio_latency_ms = estimate
        return estimate

    def stats(self) -> LatencyStats:
        """Compute current, average and jitter figures over the window."""
        if not self._samples:
            return LatencyStats(audio_latency_ms=self.audio_latency_ms)

        values = np.fromiter((s.round_trip_ms for s in self._samples), dtype=float)
        average = float(values.mean())
        jitter = float(values.std())
        current = float(values[-1])
        is_stable = (
            jitter < JITTER_THRESHOLD_MS and abs(current - average) < STABILITY_THRESHOLD_MS
        )
        return LatencyStats(
            current_ms=round(current, 2),
            average_ms=round(average, 2),
            jitter_ms=round(jitter, 2),
            is_stable=is_stable,
            sample_count=len(values),
            audio_latency_ms=self.audio_latency_ms,
        )

    def reset(self) -> None:
        """Drop all round-trip samples."""
        self._samples.clear()

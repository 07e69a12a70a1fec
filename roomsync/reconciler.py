"""Member-side position reconciliation.

Each tick the reconciler extrapolates the owner's last published position to
the present, corrects for known store latencies, smooths the result over the
last few ticks and only seeks when the local player is off by more than a
latency-scaled tolerance. Small desync is deliberately ignored so that network
jitter does not turn into audible micro-seeks.

Latency convention: the raw target is

    position + (now - published_at) - owner_write_latency / 2 - member_rtt

with the owner's one-way write delay taken as half its round trip and the
member's read delay as its full round trip. Optionally the local audio output
latency is added so that the seek lands where the owner will be once the
audio is actually heard.
"""

from __future__ import annotations

import collections
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from roomsync.models import Snapshot
from roomsync.utils import now_ms, wait_bounded

if TYPE_CHECKING:
    from roomsync.driver import PlaybackDriver
    from roomsync.latency import LatencyEstimator
    from roomsync.session import RoomSyncSession
    from roomsync.store import SyncStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileConfig:
    """Tunable reconciliation parameters.

    Attributes:
        smoothing_current_weight: Share of the new sample in the smoothed value.
        history_weights: Weights for past samples, oldest first. Only the
            newest ``len(history)`` weights are used, renormalised.
        history_size: Number of past samples kept for smoothing.
        base_tolerance_ms: Desync ignored on a low-latency connection.
        min_tolerance_ms: Lower bound of the adaptive tolerance.
        max_tolerance_ms: Upper bound of the adaptive tolerance.
        high_latency_threshold_ms: Above this average latency, add 2x latency.
        moderate_latency_threshold_ms: Above this average latency, add 1x latency.
        compensate_audio_latency: Add the local audio output latency to targets.
        history_reset_threshold_ms: A sample this far from the last one is an
            owner seek or track change and discards the smoothing history.
    """

    smoothing_current_weight: float = 0.7
    history_weights: tuple[float, ...] = (0.1, 0.3, 0.6)
    history_size: int = 3
    base_tolerance_ms: float = 1000.0
    min_tolerance_ms: float = 500.0
    max_tolerance_ms: float = 5000.0
    high_latency_threshold_ms: float = 200.0
    moderate_latency_threshold_ms: float = 100.0
    compensate_audio_latency: bool = False
    history_reset_threshold_ms: float = 5000.0

    def __post_init__(self) -> None:
        if not 0.0 < self.smoothing_current_weight <= 1.0:
            raise ValueError("smoothing_current_weight must be in (0, 1]")
        if self.history_size < 1:
            raise ValueError("history_size must be at least 1")
        if not self.history_weights or any(w < 0 for w in self.history_weights):
            raise ValueError("history_weights must be non-empty and non-negative")
        if self.min_tolerance_ms > self.max_tolerance_ms:
            raise ValueError("min_tolerance_ms must not exceed max_tolerance_ms")


def compute_raw_target(
    snapshot: Snapshot,
    now: float,
    read_latency_ms: float,
    audio_latency_ms: float = 0.0,
) -> float:
    """Extrapolate the owner's position to ``now``.

    Paused snapshots do not drift and return their position unchanged. The
    result is not clamped, so elapsed time maps one-to-one onto the target.
    """
    if not snapshot.is_playing:
        return float(snapshot.position_ms)

    elapsed = now - snapshot.published_at
    write_latency_half = (snapshot.owner_write_latency_ms or 0.0) / 2
    return snapshot.position_ms + elapsed - write_latency_half - read_latency_ms + audio_latency_ms


def adaptive_tolerance(
    member_latency_ms: float,
    owner_latency_ms: float,
    config: ReconcileConfig | None = None,
) -> float:
    """Desync in ms below which no seek is issued.

    Grows with the average of both participants' latencies and stays within
    the configured bounds.
    """
    config = config or ReconcileConfig()
    avg_latency = (member_latency_ms + owner_latency_ms) / 2

    tolerance = config.base_tolerance_ms
    if avg_latency > config.high_latency_threshold_ms:
        tolerance += avg_latency * 2
    elif avg_latency > config.moderate_latency_threshold_ms:
        tolerance += avg_latency

    return min(max(tolerance, config.min_tolerance_ms), config.max_tolerance_ms)


class JitterSmoother:
    """Weighted blend of the newest sample with the last few samples."""

    def __init__(self, config: ReconcileConfig | None = None) -> None:
        """Initialize the smoother.

        Args:
            config: Weights and history size; defaults to ReconcileConfig().
        """
        self._config = config or ReconcileConfig()
        self._history: collections.deque[float] = collections.deque(
            maxlen=self._config.history_size
        )

    @property
    def history(self) -> list[float]:
        """Past samples, oldest first."""
        return list(self._history)

    def smooth(self, value: float) -> float:
        """Add value to the history and return the smoothed value."""
        config = self._config
        if self._history and abs(value - self._history[-1]) > config.history_reset_threshold_ms:
            logger.debug(
                "Sample jumped %.0fms, discarding smoothing history",
                value - self._history[-1],
            )
            self._history.clear()

        if not self._history:
            smoothed = value
        else:
            weights = config.history_weights[-len(self._history) :]
            # Fewer weights than history entries: pad the oldest with the first weight
            if len(weights) < len(self._history):
                weights = (weights[0],) * (len(self._history) - len(weights)) + weights
            total = sum(weights)
            if total <= 0:
                history_avg = self._history[-1]
            else:
                history_avg = sum(w * h for w, h in zip(weights, self._history)) / total
            current_weight = config.smoothing_current_weight
            smoothed = current_weight * value + (1 - current_weight) * history_avg

        self._history.append(value)
        return smoothed

    def reset(self) -> None:
        """Forget all past samples."""
        self._history.clear()


class PositionReconciler:
    """Steers the local player towards the owner's published position."""

    def __init__(
        self,
        store: SyncStore,
        driver: PlaybackDriver,
        estimator: LatencyEstimator,
        session: RoomSyncSession,
        config: ReconcileConfig | None = None,
        *,
        clock: Callable[[], float] = now_ms,
        call_timeout: float = 2.0,
    ) -> None:
        """Initialize the reconciler.

        Args:
            store: Shared store to read snapshots from.
            driver: Local playback driver to steer.
            estimator: Source of the member's round-trip and audio latency.
            session: Session receiving sync time and errors.
            config: Tunable parameters; defaults to ReconcileConfig().
            clock: Wall-clock source in milliseconds.
            call_timeout: Bound in seconds for each driver or store call.
        """
        self._store = store
        self._driver = driver
        self._estimator = estimator
        self._session = session
        self._config = config or ReconcileConfig()
        self._clock = clock
        self._call_timeout = call_timeout
        # Smoothing runs on the playback anchor (target - now), which stays
        # constant while both players advance in real time.
        self._smoother = JitterSmoother(self._config)
        self.last_target_ms: float | None = None

    def reset(self) -> None:
        """Discard smoothing history, e.g. after leaving a room."""
        self._smoother.reset()
        self.last_target_ms = None

    def compute_target(self, snapshot: Snapshot, now: float) -> float:
        """Return the smoothed, non-negative target position for ``now``."""
        member_rtt = self._estimator.current_ms or 0.0
        audio_latency = (
            self._estimator.audio_latency_ms if self._config.compensate_audio_latency else 0.0
        )
        raw_target = compute_raw_target(snapshot, now, member_rtt, audio_latency)

        if not snapshot.is_playing:
            self._smoother.reset()
            target = raw_target
        else:
            target = self._smoother.smooth(raw_target - now) + now

        target = max(0.0, target)
        self.last_target_ms = target
        return target

    async def reconcile_tick(self) -> bool:
        """Run one reconciliation step. Returns False if the tick failed.

        Failures are recorded on the session and never raised. The session
        is re-checked after every await, so a tick overtaken by stop() issues
        no further driver commands.
        """
        session = self._session
        try:
            snapshot = await wait_bounded(
                self._store.get_snapshot(session.room_id), self._call_timeout
            )
            if not session.is_active:
                return False
            if snapshot is None:
                logger.debug("No snapshot for room %s yet", session.room_id)
                return True

            state = await wait_bounded(
                self._driver.get_current_state(), self._call_timeout, shield=True
            )
            if not session.is_active:
                return False
            if state is None:
                logger.debug("Nothing loaded in driver, skipping reconcile")
                return True

            now = self._clock()
            target = self.compute_target(snapshot, now)
            member_rtt = self._estimator.current_ms or 0.0
            tolerance = adaptive_tolerance(
                member_rtt, snapshot.owner_write_latency_ms or 0.0, self._config
            )
            diff = abs(state.position_ms - target)

            if diff > tolerance:
                logger.info(
                    "Seeking: local=%dms -> target=%dms (diff=%dms, tolerance=%dms, rtt=%.1fms)",
                    state.position_ms,
                    round(target),
                    round(diff),
                    round(tolerance),
                    member_rtt,
                )
                await wait_bounded(
                    self._driver.seek(round(target)), self._call_timeout, shield=True
                )
                if not session.is_active:
                    return False

            if state.is_paused and snapshot.is_playing:
                logger.info("Owner is playing, resuming")
                await wait_bounded(self._driver.play(), self._call_timeout, shield=True)
            elif not state.is_paused and not snapshot.is_playing:
                logger.info("Owner is paused, pausing")
                await wait_bounded(self._driver.pause(), self._call_timeout, shield=True)
        except Exception as e:
            if not session.is_active:
                logger.debug("Sync tick for stopped room %s failed: %r", session.room_id, e)
                return False
            logger.warning("Failed to sync room %s: %r", session.room_id, e)
            session.record_error(f"Sync error: {e!r}")
            return False

        if not session.is_active:
            return False
        session.mark_synced(self._clock())
        return True

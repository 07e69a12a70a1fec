"""Owner-side snapshot publishing."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from roomsync.models import Snapshot
from roomsync.store import ROOM_TTL_SECONDS
from roomsync.utils import now_ms, wait_bounded

if TYPE_CHECKING:
    from roomsync.driver import PlaybackDriver
    from roomsync.latency import LatencyEstimator
    from roomsync.session import RoomSyncSession
    from roomsync.store import SyncStore

logger = logging.getLogger(__name__)


class SnapshotPublisher:
    """Publishes the owner's playback position to the shared store."""

    def __init__(
        self,
        store: SyncStore,
        driver: PlaybackDriver,
        estimator: LatencyEstimator,
        session: RoomSyncSession,
        *,
        clock: Callable[[], float] = now_ms,
        ttl_seconds: int = ROOM_TTL_SECONDS,
        call_timeout: float = 2.0,
    ) -> None:
        """Initialize the publisher.

        Args:
            store: Shared store to write snapshots to.
            driver: Local playback driver (the authoritative player).
            estimator: Source of the owner's write latency.
            session: Session receiving sync time and errors.
            clock: Wall-clock source in milliseconds.
            ttl_seconds: Snapshot expiry, refreshed on every publish.
            call_timeout: Bound in seconds for each driver or store call.
        """
        self._store = store
        self._driver = driver
        self._estimator = estimator
        self._session = session
        self._clock = clock
        self._ttl_seconds = ttl_seconds
        self._call_timeout = call_timeout

    async def publish_tick(self) -> bool:
        """Publish one snapshot. Returns False if the tick failed.

        Failures are recorded on the session and never raised; the next
        scheduled tick simply tries again. Nothing is written once the
        session has been stopped.
        """
        session = self._session
        try:
            state = await wait_bounded(
                self._driver.get_current_state(), self._call_timeout, shield=True
            )
            if not session.is_active:
                return False
            if state is None:
                logger.debug("Nothing loaded in driver, skipping publish")
                return True

            snapshot = Snapshot(
                position_ms=max(0, int(state.position_ms)),
                published_at=self._clock(),
                is_playing=not state.is_paused,
                owner_write_latency_ms=self._estimator.current_ms,
            )
            await wait_bounded(
                self._store.put_snapshot(session.room_id, snapshot, self._ttl_seconds),
                self._call_timeout,
            )
        except Exception as e:
            if not session.is_active:
                logger.debug("Publish for stopped room %s failed: %r", session.room_id, e)
                return False
            logger.warning("Failed to publish snapshot for room %s: %r", session.room_id, e)
            session.record_error(f"Send error: {e!r}")
            return False

        if not session.is_active:
            return False
        session.mark_synced(self._clock())
        logger.debug(
            "Published: position=%dms playing=%s write_latency=%s",
            snapshot.position_ms,
            snapshot.is_playing,
            snapshot.owner_write_latency_ms,
        )
        return True

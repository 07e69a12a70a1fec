"""Sync loop controller: schedules publisher or reconciler ticks for a room."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from roomsync.driver import PlaybackDriver
from roomsync.hooks import run_hook
from roomsync.latency import LatencyEstimator
from roomsync.models import LatencyStats, Role
from roomsync.publisher import SnapshotPublisher
from roomsync.reconciler import PositionReconciler, ReconcileConfig
from roomsync.session import RoomSyncSession, SyncState
from roomsync.status_server import StatusServer
from roomsync.store import ROOM_TTL_SECONDS, SyncStore
from roomsync.utils import create_task, now_ms, wait_bounded

logger = logging.getLogger(__name__)


@dataclass
class SyncConfig:
    """Configuration for a participant's sync loop."""

    participant_id: str
    sync_interval: float = 1.0
    latency_interval: float = 1.0
    call_timeout: float = 2.0
    snapshot_ttl_seconds: int = ROOM_TTL_SECONDS
    max_consecutive_failures: int = 3
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    start_hook: str | None = None
    stop_hook: str | None = None
    status_port: int | None = None
    """Serve the session over HTTP on this port while the controller is open."""

    def __post_init__(self) -> None:
        if self.sync_interval <= 0:
            raise ValueError("sync_interval must be positive")
        if not 1.0 <= self.latency_interval <= 5.0:
            raise ValueError("latency_interval must be between 1 and 5 seconds")


class SyncLoopController:
    """Runs the sync loop for one room at a time.

    Owners publish snapshots, members reconcile against them. A second,
    slower loop keeps latency figures current. Changing room or role means
    stopping and starting again.
    """

    def __init__(
        self,
        store: SyncStore,
        config: SyncConfig,
        *,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        """Initialize the controller.

        Args:
            store: Shared store used for snapshots and latency probes.
            config: Loop configuration.
            clock: Wall-clock source in milliseconds.
        """
        self._store = store
        self._config = config
        self._clock = clock
        self._estimator = LatencyEstimator(store, clock=clock)
        self._session: RoomSyncSession | None = None
        self._tick: Callable[[], Coroutine[Any, Any, bool]] | None = None
        self._reconciler: PositionReconciler | None = None
        self._sync_task: asyncio.Task[None] | None = None
        self._latency_task: asyncio.Task[None] | None = None
        self._tick_lock = asyncio.Lock()
        self._consecutive_failures = 0
        self._status_server: StatusServer | None = None

    @property
    def session(self) -> RoomSyncSession | None:
        """Current session, or None if never started."""
        return self._session

    @property
    def estimator(self) -> LatencyEstimator:
        """Latency estimator shared by the loops."""
        return self._estimator

    @property
    def state(self) -> SyncState:
        """Lifecycle state of the current session."""
        return self._session.state if self._session is not None else SyncState.STOPPED

    @property
    def is_connected(self) -> bool:
        """Whether recent ticks have succeeded."""
        return self._session is not None and self._session.is_connected

    @property
    def last_sync_time(self) -> float | None:
        """Wall-clock time (ms) of the last completed tick."""
        return self._session.last_sync_at if self._session is not None else None

    @property
    def latency_info(self) -> LatencyStats:
        """Current latency figures."""
        return self._session.latency if self._session is not None else LatencyStats()

    @property
    def sync_errors(self) -> list[str]:
        """Most recent tick errors, oldest first."""
        return self._session.errors if self._session is not None else []

    def clear_errors(self) -> None:
        """Clear the session's error ring."""
        if self._session is not None:
            self._session.clear_errors()

    async def start(self, room_id: str, role: Role, driver: PlaybackDriver) -> RoomSyncSession:
        """Start syncing room_id in the given role.

        Any running session is stopped first. An invalid room id is reported
        through the returned session's errors instead of raising.
        """
        await self.stop()

        config = self._config
        session = RoomSyncSession(
            room_id=room_id if isinstance(room_id, str) else str(room_id),
            role=role,
            participant_id=config.participant_id,
        )
        self._session = session

        if config.status_port is not None and self._status_server is None:
            self._status_server = StatusServer(self, port=config.status_port)
            try:
                await self._status_server.start()
            except OSError as e:
                logger.error("Could not serve status on port %d: %s", config.status_port, e)
                self._status_server = None

        if not isinstance(room_id, str) or not room_id.strip():
            logger.error("Refusing to start sync loop: invalid room id %r", room_id)
            session.state = SyncState.STOPPED
            session.record_error(f"Setup error: invalid room id {room_id!r}")
            return session

        self._consecutive_failures = 0
        self._estimator.reset()
        await self._estimator.refresh_audio_latency()
        session.latency = self._estimator.stats()
        if not session.is_active:
            logger.debug("Session for room %s stopped during setup", session.room_id)
            return session

        if role == Role.OWNER:
            publisher = SnapshotPublisher(
                self._store,
                driver,
                self._estimator,
                session,
                clock=self._clock,
                ttl_seconds=config.snapshot_ttl_seconds,
                call_timeout=config.call_timeout,
            )
            self._reconciler = None
            self._tick = publisher.publish_tick
        else:
            self._reconciler = PositionReconciler(
                self._store,
                driver,
                self._estimator,
                session,
                config.reconcile,
                clock=self._clock,
                call_timeout=config.call_timeout,
            )
            self._tick = self._reconciler.reconcile_tick

        logger.info("Starting sync loop for room %s as %s", room_id, role.value)
        self._latency_task = create_task(self._latency_loop(session), name="roomsync-latency")
        self._sync_task = create_task(self._sync_loop(session), name="roomsync-sync")

        await self._run_lifecycle_hook(config.start_hook, "start", session)
        return session

    async def stop(self) -> None:
        """Stop the current session. Safe to call repeatedly."""
        session = self._session
        was_active = session is not None and session.is_active
        # Mark the session stopped before anything is awaited: loops and
        # in-flight ticks check it, so nothing acts on the session afterwards.
        if session is not None:
            session.state = SyncState.STOPPED
            session.is_connected = False

        tasks = [t for t in (self._sync_task, self._latency_task) if t is not None]
        self._sync_task = None
        self._latency_task = None
        self._tick = None

        # stop() may run inside one of the loop tasks; it cannot await itself
        current = asyncio.current_task()
        others = [t for t in tasks if t is not current]
        for task in others:
            task.cancel()
        if others:
            _, pending = await asyncio.wait(others, timeout=self._config.call_timeout)
            for task in pending:
                logger.warning(
                    "Task %s did not stop within %.1fs", task.get_name(), self._config.call_timeout
                )

        if self._reconciler is not None:
            self._reconciler.reset()
            self._reconciler = None

        if not was_active:
            return
        logger.info("Stopped sync loop for room %s", session.room_id)

        try:
            await wait_bounded(
                self._store.remove_member_latency(session.room_id, session.participant_id),
                self._config.call_timeout,
            )
        except Exception as e:
            logger.debug("Failed to remove latency entry on stop: %r", e)

        await self._run_lifecycle_hook(self._config.stop_hook, "stop", session)

    async def close(self) -> None:
        """Stop the current session and the status endpoint, if any."""
        await self.stop()
        if self._status_server is not None:
            await self._status_server.stop()
            self._status_server = None

    async def manual_sync(self) -> bool:
        """Run one tick immediately, outside the schedule."""
        session = self._session
        if session is None or not session.is_active:
            logger.debug("Manual sync requested without a running session")
            return False
        return await self._run_tick(session)

    async def _run_lifecycle_hook(
        self, command: str | None, event: str, session: RoomSyncSession
    ) -> None:
        """Run a start or stop hook; a failed hook lands in the error ring."""
        if not command:
            return
        status = await run_hook(
            command,
            event=event,
            room_id=session.room_id,
            role=session.role.value,
            participant_id=session.participant_id,
        )
        if status != 0:
            outcome = "did not complete" if status is None else f"exited with status {status}"
            session.record_error(f"Hook error: {event} hook {outcome}")

    async def _run_tick(self, session: RoomSyncSession) -> bool:
        """Run one tick, serialised with all other ticks."""
        async with self._tick_lock:
            tick = self._tick
            if tick is None or session is not self._session or not session.is_active:
                return False
            ok = await tick()

        if not session.is_active:
            return False
        if ok:
            self._consecutive_failures = 0
            session.is_connected = True
            if session.state == SyncState.STARTING:
                session.state = SyncState.RUNNING
                logger.info("Sync loop running for room %s", session.room_id)
        else:
            self._consecutive_failures += 1
            if self._consecutive_failures >= self._config.max_consecutive_failures:
                if session.is_connected:
                    logger.warning(
                        "Lost sync with room %s after %d failed ticks",
                        session.room_id,
                        self._consecutive_failures,
                    )
                session.is_connected = False
        return ok

    async def _sync_loop(self, session: RoomSyncSession) -> None:
        """Tick at a fixed cadence until the session stops or the task is cancelled."""
        loop = asyncio.get_running_loop()
        interval = self._config.sync_interval
        while session.is_active:
            started = loop.time()
            try:
                await self._run_tick(session)
            except Exception:
                logger.exception("Unexpected error in sync tick")
                session.record_error("Sync error: unexpected failure")
            _raise_if_cancelling()
            elapsed = loop.time() - started
            await asyncio.sleep(max(0.0, interval - elapsed))

    async def _latency_loop(self, session: RoomSyncSession) -> None:
        """Refresh latency figures at a slower cadence until the session stops."""
        while session.is_active:
            try:
                await self._estimator.sample()
                if not session.is_active:
                    break
                await self._estimator.report(session.room_id, session.participant_id)
                await self._estimator.refresh_audio_latency()
                session.latency = self._estimator.stats()
            except Exception:
                logger.exception("Unexpected error while sampling latency")
            _raise_if_cancelling()
            await asyncio.sleep(self._config.latency_interval)

    async def __aenter__(self) -> SyncLoopController:
        """Async context manager entry."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        await self.close()


def _raise_if_cancelling() -> None:
    """Honour a cancellation that a bounded wait absorbed."""
    task = asyncio.current_task()
    if task is not None and task.cancelling():
        raise asyncio.CancelledError

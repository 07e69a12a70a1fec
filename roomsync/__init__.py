"""Keep independent media players in approximate lockstep through a shared store."""

from roomsync.controller import SyncConfig, SyncLoopController
from roomsync.driver import PlaybackDriver
from roomsync.latency import LatencyEstimator
from roomsync.models import DriverState, LatencySample, LatencyStats, Role, Snapshot
from roomsync.publisher import SnapshotPublisher
from roomsync.reconciler import (
    JitterSmoother,
    PositionReconciler,
    ReconcileConfig,
    adaptive_tolerance,
    compute_raw_target,
)
from roomsync.session import RoomSyncSession, SyncState
from roomsync.status_server import StatusServer
from roomsync.store import RedisKey, RedisSyncStore, SyncStore

__all__ = [
    "DriverState",
    "JitterSmoother",
    "LatencyEstimator",
    "LatencySample",
    "LatencyStats",
    "PlaybackDriver",
    "PositionReconciler",
    "RedisKey",
    "RedisSyncStore",
    "ReconcileConfig",
    "Role",
    "RoomSyncSession",
    "Snapshot",
    "SnapshotPublisher",
    "StatusServer",
    "SyncConfig",
    "SyncLoopController",
    "SyncState",
    "SyncStore",
    "adaptive_tolerance",
    "compute_raw_target",
]

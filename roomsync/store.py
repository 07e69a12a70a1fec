"""Shared key-value store holding room snapshots and member latencies.

Redis is used for:
- The owner's latest snapshot per room (TTL-bound JSON value)
- Per-member latency samples (hash keyed by participant id)
- Throwaway round-trip markers for latency probing
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Protocol

import redis.asyncio as redis_client

from roomsync.models import Snapshot
from roomsync.utils import monotonic_ms, now_ms

logger = logging.getLogger(__name__)

ROOM_TTL_SECONDS = 86_400
"""Room keys expire after a day so abandoned rooms do not accumulate."""
PING_TTL_SECONDS = 1
MEMBER_LATENCY_STALE_MS = 30_000
"""Member latency samples older than this are treated as absent."""


class RedisKey:
    """Redis key patterns - avoids magic strings."""

    @staticmethod
    def room_sync(room_id: str) -> str:
        """Key for the owner's latest snapshot in a room."""
        return f"room:sync:{room_id}"

    @staticmethod
    def room_latency(room_id: str) -> str:
        """Hash key: participant id -> JSON latency sample."""
        return f"room:latency:{room_id}"

    @staticmethod
    def ping(token: str) -> str:
        """Key for a throwaway round-trip marker."""
        return f"ping:{token}"


class SyncStore(Protocol):
    """Operations the sync core needs from the shared store."""

    async def put_snapshot(
        self, room_id: str, snapshot: Snapshot, ttl_seconds: int = ROOM_TTL_SECONDS
    ) -> None: ...

    async def get_snapshot(self, room_id: str) -> Snapshot | None: ...

    async def put_member_latency(
        self, room_id: str, participant_id: str, latency_ms: float
    ) -> None: ...

    async def get_member_latency(self, room_id: str, participant_id: str) -> float: ...

    async def remove_member_latency(self, room_id: str, participant_id: str) -> None: ...

    async def ping(self) -> float: ...


class RedisSyncStore:
    """SyncStore backed by an asyncio Redis client.

    Values are stored as JSON strings, so the client must be created with
    ``decode_responses=True``. Redis errors propagate to the caller.
    """

    def __init__(self, redis: redis_client.Redis) -> None:
        """Initialize the store.

        Args:
            redis: Async Redis client (decode_responses=True).
        """
        self._redis = redis

    @classmethod
    def from_url(cls, url: str) -> RedisSyncStore:
        """Create a store connected to the Redis server at url."""
        return cls(redis_client.from_url(url, decode_responses=True))

    async def close(self) -> None:
        """Close the underlying Redis connection pool."""
        await self._redis.aclose()

    # =========================================================================
    # Generic key-value operations
    # =========================================================================

    async def put(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        """Store a JSON value under key with a TTL."""
        await self._redis.set(key, json.dumps(value), ex=ttl_seconds)

    async def get(self, key: str) -> Any | None:
        """Return the decoded JSON value under key, or None if absent."""
        raw = await self._redis.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable value at %s", key)
            return None

    async def hash_put(
        self, key: str, field: str, value: dict[str, Any], ttl_seconds: int
    ) -> None:
        """Store a JSON value in a hash field and refresh the hash TTL."""
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.hset(key, field, json.dumps(value))
            pipe.expire(key, ttl_seconds)
            await pipe.execute()

    async def hash_get(self, key: str, field: str) -> Any | None:
        """Return the decoded JSON value of a hash field, or None if absent."""
        raw = await self._redis.hget(key, field)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable value at %s[%s]", key, field)
            return None

    # =========================================================================
    # Snapshots
    # =========================================================================

    async def put_snapshot(
        self, room_id: str, snapshot: Snapshot, ttl_seconds: int = ROOM_TTL_SECONDS
    ) -> None:
        """Overwrite the room's snapshot, refreshing its TTL."""
        await self.put(RedisKey.room_sync(room_id), snapshot.to_dict(), ttl_seconds)
        logger.debug(
            "Stored snapshot for room %s: position=%dms playing=%s",
            room_id,
            snapshot.position_ms,
            snapshot.is_playing,
        )

    async def get_snapshot(self, room_id: str) -> Snapshot | None:
        """Return the room's latest snapshot, or None if there is none."""
        data = await self.get(RedisKey.room_sync(room_id))
        if data is None:
            return None
        return Snapshot.from_dict(data)

    # =========================================================================
    # Member latency
    # =========================================================================

    async def put_member_latency(
        self, room_id: str, participant_id: str, latency_ms: float
    ) -> None:
        """Record a participant's latest round-trip latency."""
        await self.hash_put(
            RedisKey.room_latency(room_id),
            participant_id,
            {"user_id": participant_id, "latency_ms": latency_ms, "last_ping": now_ms()},
            ROOM_TTL_SECONDS,
        )

    async def get_member_latency(self, room_id: str, participant_id: str) -> float:
        """Return a participant's latency, or 0 if unknown or stale."""
        data = await self.hash_get(RedisKey.room_latency(room_id), participant_id)
        return _fresh_latency(data, now_ms())

    async def get_room_latencies(self, room_id: str) -> dict[str, float]:
        """Return the fresh latency of every participant in a room."""
        raw = await self._redis.hgetall(RedisKey.room_latency(room_id))
        now = now_ms()
        result: dict[str, float] = {}
        for participant_id, value in raw.items():
            try:
                data = json.loads(value)
            except json.JSONDecodeError:
                continue
            latency = _fresh_latency(data, now)
            if latency > 0:
                result[participant_id] = latency
        return result

    async def remove_member_latency(self, room_id: str, participant_id: str) -> None:
        """Drop a participant's latency entry."""
        await self._redis.hdel(RedisKey.room_latency(room_id), participant_id)

    async def clear_room(self, room_id: str) -> None:
        """Delete all sync state of a room."""
        await self._redis.delete(RedisKey.room_sync(room_id), RedisKey.room_latency(room_id))
        logger.info("Cleared sync data for room %s", room_id)

    # =========================================================================
    # Round-trip probe
    # =========================================================================

    async def ping(self) -> float:
        """Write and read back a throwaway marker, returning elapsed ms."""
        key = RedisKey.ping(uuid.uuid4().hex)
        start = monotonic_ms()
        await self._redis.set(key, "ping", ex=PING_TTL_SECONDS)
        await self._redis.get(key)
        return max(0.0, monotonic_ms() - start)


def _fresh_latency(data: Any, now: float) -> float:
    """Extract latency from a stored sample, treating stale samples as 0."""
    if not isinstance(data, dict):
        return 0.0
    latency = data.get("latency_ms")
    last_ping = data.get("last_ping")
    if not isinstance(latency, int | float) or not isinstance(last_ping, int | float):
        return 0.0
    if now - last_ping > MEMBER_LATENCY_STALE_MS:
        return 0.0
    return max(0.0, float(latency))

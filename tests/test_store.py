"""Tests for the Redis-backed sync store."""

import json
from unittest.mock import patch

import pytest

from roomsync.models import Snapshot
from roomsync.store import (
    MEMBER_LATENCY_STALE_MS,
    PING_TTL_SECONDS,
    ROOM_TTL_SECONDS,
    RedisKey,
)


def test_key_patterns():
    assert RedisKey.room_sync("123456") == "room:sync:123456"
    assert RedisKey.room_latency("123456") == "room:latency:123456"
    assert RedisKey.ping("abc") == "ping:abc"


@pytest.mark.asyncio
async def test_snapshot_roundtrip_with_ttl(store, redis):
    snapshot = Snapshot(12_345, 1_700_000_000_000.0, True, 35.0)
    await store.put_snapshot("123456", snapshot)

    assert await store.get_snapshot("123456") == snapshot
    ttl = await redis.ttl("room:sync:123456")
    assert 0 < ttl <= ROOM_TTL_SECONDS


@pytest.mark.asyncio
async def test_snapshot_overwritten_in_place(store, redis):
    await store.put_snapshot("123456", Snapshot(1_000, 1.0, True))
    await store.put_snapshot("123456", Snapshot(2_000, 2.0, False))

    snapshot = await store.get_snapshot("123456")
    assert snapshot.position_ms == 2_000
    assert snapshot.is_playing is False
    assert await redis.keys("room:sync:*") == ["room:sync:123456"]


@pytest.mark.asyncio
async def test_missing_snapshot_is_none(store):
    assert await store.get_snapshot("nope") is None


@pytest.mark.asyncio
async def test_malformed_snapshot_is_none(store, redis):
    await redis.set("room:sync:bad", "{not json")
    await redis.set("room:sync:partial", json.dumps({"is_playing": True}))

    assert await store.get_snapshot("bad") is None
    assert await store.get_snapshot("partial") is None


@pytest.mark.asyncio
async def test_member_latency(store, redis):
    await store.put_member_latency("123456", "member-1", 48.5)
    await store.put_member_latency("123456", "member-2", 120.0)

    assert await store.get_member_latency("123456", "member-1") == 48.5
    assert await store.get_member_latency("123456", "unknown") == 0.0
    assert await store.get_room_latencies("123456") == {"member-1": 48.5, "member-2": 120.0}
    assert 0 < await redis.ttl("room:latency:123456") <= ROOM_TTL_SECONDS


@pytest.mark.asyncio
async def test_stale_member_latency_reads_as_zero(store):
    with patch("roomsync.store.now_ms", return_value=1_000_000.0):
        await store.put_member_latency("123456", "member-1", 48.5)

    with patch("roomsync.store.now_ms", return_value=1_000_000.0 + MEMBER_LATENCY_STALE_MS + 1):
        assert await store.get_member_latency("123456", "member-1") == 0.0
        assert await store.get_room_latencies("123456") == {}


@pytest.mark.asyncio
async def test_remove_member_latency(store):
    await store.put_member_latency("123456", "member-1", 48.5)
    await store.remove_member_latency("123456", "member-1")
    assert await store.get_member_latency("123456", "member-1") == 0.0


@pytest.mark.asyncio
async def test_clear_room(store, redis):
    await store.put_snapshot("123456", Snapshot(1_000, 1.0, True))
    await store.put_member_latency("123456", "member-1", 10.0)

    await store.clear_room("123456")
    assert await redis.exists("room:sync:123456", "room:latency:123456") == 0


@pytest.mark.asyncio
async def test_ping_leaves_short_lived_marker(store, redis):
    elapsed = await store.ping()
    assert elapsed >= 0.0
    keys = await redis.keys("ping:*")
    assert len(keys) == 1
    assert 0 < await redis.ttl(keys[0]) <= PING_TTL_SECONDS

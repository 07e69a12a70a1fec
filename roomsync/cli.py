"""Command-line interface for inspecting room sync state."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence
from typing import Any

import aiohttp
from redis.exceptions import RedisError

from roomsync.latency import LatencyEstimator, estimate_audio_latency
from roomsync.reconciler import compute_raw_target
from roomsync.settings import SyncSettings, get_settings
from roomsync.status_server import DEFAULT_STATUS_PORT
from roomsync.store import RedisSyncStore
from roomsync.utils import now_ms

logger = logging.getLogger(__name__)

STATUS_REQUEST_TIMEOUT_SECONDS = 5.0


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(description="Inspect roomsync playback sync state")
    parser.add_argument(
        "--redis-url",
        default=None,
        help="URL of the shared Redis store (defaults to the last one used)",
    )
    parser.add_argument(
        "--room",
        default=None,
        help="Room code to inspect (defaults to the last one used)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help=f"Port of a running sync loop's status endpoint (default: {DEFAULT_STATUS_PORT})",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level to use (defaults to the last one used, then WARNING)",
    )
    parser.add_argument(
        "--config-dir",
        default=None,
        help="Directory for persisted settings (defaults to ~/.config/roomsync)",
    )
    parser.add_argument(
        "--show",
        action="store_true",
        help="Show the room's latest snapshot and member latencies",
    )
    parser.add_argument(
        "--ping",
        type=int,
        default=0,
        metavar="N",
        help="Measure N round trips to the store and print latency statistics",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print the session of a running sync loop via its status endpoint",
    )
    parser.add_argument(
        "--resync",
        action="store_true",
        help="Ask a running sync loop to sync immediately, then print its session",
    )
    parser.add_argument(
        "--audio-latency",
        action="store_true",
        help="Print the estimated local audio output latency and exit",
    )
    return parser.parse_args(argv)


async def show_room(store: RedisSyncStore, room_id: str) -> int:
    """Print a room's snapshot and member latencies."""
    snapshot = await store.get_snapshot(room_id)
    if snapshot is None:
        print(f"No snapshot for room {room_id}.")
        return 1

    now = now_ms()
    age_ms = now - snapshot.published_at
    print(f"Room {room_id}:")
    print(f"  Position:  {snapshot.position_ms / 1000:.1f} s")
    print(f"  Playing:   {'yes' if snapshot.is_playing else 'no'}")
    print(f"  Age:       {age_ms / 1000:.1f} s")
    if snapshot.owner_write_latency_ms is not None:
        print(f"  Owner RTT: {snapshot.owner_write_latency_ms:.1f} ms")
    estimated = max(0.0, compute_raw_target(snapshot, now, read_latency_ms=0.0))
    print(f"  Now at:    {estimated / 1000:.1f} s (estimated)")

    latencies = await store.get_room_latencies(room_id)
    if latencies:
        print()
        print("Member latencies:")
        for participant_id, latency in sorted(latencies.items()):
            print(f"  {participant_id}: {latency:.1f} ms")
    return 0


async def ping_store(store: RedisSyncStore, count: int) -> int:
    """Measure round trips to the store and print statistics."""
    estimator = LatencyEstimator(store, window=count)
    for _ in range(count):
        round_trip = await estimator.sample()
        print(f"  {round_trip:.1f} ms" if round_trip > 0 else "  failed")
    stats = estimator.stats()
    if stats.sample_count == 0:
        print("All round trips failed.")
        return 1
    print()
    print(
        f"Average {stats.average_ms:.1f} ms, jitter {stats.jitter_ms:.1f} ms, "
        f"{'stable' if stats.is_stable else 'unstable'}"
    )
    return 0


def print_session(data: dict[str, Any]) -> None:
    """Print a session as returned by the status endpoint."""
    if "room_id" not in data:
        print("No active session.")
        return
    print(f"Room {data['room_id']} ({data['role']}, {data['participant_id']}):")
    print(f"  State:     {data['state']}")
    print(f"  Connected: {'yes' if data['is_connected'] else 'no'}")
    last_sync = data.get("last_sync_at")
    if last_sync is not None:
        print(f"  Last sync: {(now_ms() - last_sync) / 1000:.1f} s ago")
    latency = data.get("latency") or {}
    if latency.get("current_ms") is not None:
        print(
            f"  RTT:       {latency['current_ms']:.1f} ms "
            f"(avg {latency['average_ms']:.1f}, jitter {latency['jitter_ms']:.1f})"
        )
    if latency.get("audio_latency_ms") is not None:
        print(f"  Audio:     {latency['audio_latency_ms']:.1f} ms")
    for error in data.get("errors") or []:
        print(f"  Error:     {error}")


async def query_status(base_url: str, *, resync: bool = False) -> int:
    """Query a running sync loop's status endpoint and print its session."""
    timeout = aiohttp.ClientTimeout(total=STATUS_REQUEST_TIMEOUT_SECONDS)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as http:
            if resync:
                async with http.post(f"{base_url}/sync") as response:
                    response.raise_for_status()
                    result = await response.json()
                print(f"Manual sync {'succeeded' if result.get('ok') else 'failed'}.")
            async with http.get(f"{base_url}/status") as response:
                response.raise_for_status()
                data = await response.json()
    except (aiohttp.ClientError, TimeoutError) as e:
        print(f"Could not reach status endpoint at {base_url}: {e!r}")
        return 1
    print_session(data)
    return 0


async def run(args: argparse.Namespace) -> int:
    """Run the requested inspection actions."""
    settings: SyncSettings = await get_settings(args.config_dir)

    log_level = args.log_level or settings.log_level
    if log_level:
        logging.getLogger().setLevel(log_level)
    redis_url = args.redis_url or settings.redis_url
    room_id = args.room or settings.last_room
    port = args.port or settings.listen_port or DEFAULT_STATUS_PORT
    settings.update(
        redis_url=redis_url,
        last_room=room_id,
        log_level=args.log_level,
        listen_port=args.port,
    )

    try:
        status = 0
        if args.status or args.resync:
            status = await query_status(f"http://127.0.0.1:{port}", resync=args.resync)
        if args.ping or args.show:
            status = await inspect_store(redis_url, room_id, args) or status
        return status
    finally:
        await settings.flush()


async def inspect_store(redis_url: str, room_id: str | None, args: argparse.Namespace) -> int:
    """Run the actions that talk to the shared store directly."""
    store = RedisSyncStore.from_url(redis_url)
    try:
        status = 0
        if args.ping:
            print(f"Pinging {redis_url}:")
            status = await ping_store(store, args.ping) or status
        if args.show:
            if room_id is None:
                print("No room given. Use --room.")
                return 2
            status = await show_room(store, room_id) or status
        return status
    except (RedisError, OSError) as e:
        logger.error("Store error: %s", e)
        return 1
    finally:
        await store.close()


def main() -> int:
    """Run the CLI."""
    args = parse_args(sys.argv[1:])
    logging.basicConfig(
        level=getattr(logging, args.log_level or "WARNING"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.audio_latency:
        estimate = estimate_audio_latency()
        print(f"Estimated audio output latency: {estimate:.1f} ms")
        return 0

    if not (args.show or args.ping or args.status or args.resync):
        print("Nothing to do. Use --show, --ping N, --status, --resync or --audio-latency.")
        return 2

    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())

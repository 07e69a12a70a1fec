"""Utility functions for roomsync."""

from __future__ import annotations

import asyncio
import inspect
import logging
import sys
import time
from collections.abc import Coroutine
from typing import TypeVar

_T = TypeVar("_T")

logger = logging.getLogger(__name__)

# Check if eager_start is supported (Python 3.12+)
_SUPPORTS_EAGER_START = sys.version_info >= (3, 12) and "eager_start" in inspect.signature(
    asyncio.create_task
).parameters


def create_task(
    coro: Coroutine[None, None, _T],
    *,
    loop: asyncio.AbstractEventLoop | None = None,
    name: str | None = None,
    eager_start: bool = False,
) -> asyncio.Task[_T]:
    """Create an asyncio task, optionally starting it eagerly.

    Sync loops are created lazily by default so that ``start()`` returns
    before the first tick touches the store or the driver.

    Note: eager_start is only supported in Python 3.12+. On older versions,
    this parameter is ignored and tasks behave normally.

    Args:
        coro: The coroutine to run as a task.
        loop: Optional event loop to use. If None, uses the running loop.
        name: Optional name for the task (for debugging).
        eager_start: Whether to start the task eagerly (default: False).

    Returns:
        The created asyncio Task.
    """
    kwargs = {"name": name} if name is not None else {}

    if _SUPPORTS_EAGER_START and eager_start:
        kwargs["eager_start"] = True

    if loop is not None:
        return loop.create_task(coro, **kwargs)
    return asyncio.create_task(coro, **kwargs)


def now_ms() -> float:
    """Return wall-clock time in milliseconds since the epoch."""
    return time.time() * 1000.0


def monotonic_ms() -> float:
    """Return monotonic time in milliseconds, for measuring durations."""
    return time.perf_counter() * 1000.0


async def wait_bounded(
    coro: Coroutine[None, None, _T], timeout: float, *, shield: bool = False
) -> _T:
    """Await coro, raising TimeoutError after timeout seconds.

    With shield=True the underlying operation keeps running when the wait
    times out or is cancelled. Use it for commands that must not be
    interrupted halfway, such as seeks. A detached operation that later
    fails is logged rather than left unretrieved.
    """
    if not shield:
        return await asyncio.wait_for(coro, timeout)

    task = asyncio.ensure_future(coro)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout)
    except (TimeoutError, asyncio.CancelledError):
        task.add_done_callback(_log_detached_result)
        raise


def _log_detached_result(task: asyncio.Future) -> None:
    """Consume the outcome of an operation whose caller stopped waiting."""
    if task.cancelled():
        return
    if (exc := task.exception()) is not None:
        logger.warning("Detached operation failed after its caller timed out: %r", exc)

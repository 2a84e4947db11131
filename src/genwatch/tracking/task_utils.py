"""Shared utilities for asyncio.Task lifecycle in the tracking components.

``log_task_exception`` extracts and logs exceptions from completed tasks so
background timers (reconnect backoff, poll loop, probes) never fail silently.
``cancel_task`` is the common teardown helper.
"""

from __future__ import annotations

import asyncio
from typing import Any


def log_task_exception(
    task: asyncio.Task[Any],
    logger: Any,
    event: str,
    *,
    level: str = "error",
) -> BaseException | None:
    """Extract and log an exception from a completed task.

    Call this at the top of any ``add_done_callback`` handler.

    Args:
        task: The completed task to inspect.
        logger: A genwatch/structlog logger.
        event: Event name (e.g. ``"poller.loop_died"``).
        level: Log method name, ``"error"`` (default) or ``"warning"``.

    Returns:
        The exception if one was found, ``None`` if the task completed
        normally or was cancelled.
    """
    if task.cancelled():
        return None
    exc = task.exception()
    if exc is not None:
        log_fn = getattr(logger, level, logger.error)
        log_fn(event, error=str(exc), task_name=task.get_name())
    return exc


async def cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel a task and wait for it to finish.

    Safe to call with None, with a finished task, and from inside the task
    itself (in which case it only requests cancellation). If the caller is
    itself being cancelled while waiting, the cancellation propagates.
    """
    if task is None or task.done():
        return
    task.cancel()
    current = asyncio.current_task()
    if task is current:
        return
    try:
        await task
    except asyncio.CancelledError:
        if current is not None and current.cancelling():
            raise

"""Tests for genwatch.tracking.task_utils."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from genwatch.tracking.task_utils import cancel_task, log_task_exception


async def _hang() -> None:
    await asyncio.sleep(100)


@pytest.mark.asyncio
async def test_log_task_exception_reports_failure() -> None:
    """A crashed background task is logged under the given event name."""

    async def _fail() -> None:
        raise ValueError("boom")

    task = asyncio.create_task(_fail(), name="poller-loop")
    with pytest.raises(ValueError):
        await task

    logger = MagicMock()
    result = log_task_exception(task, logger, "poller.loop_died", level="warning")
    assert isinstance(result, ValueError)
    logger.warning.assert_called_once_with(
        "poller.loop_died", error="boom", task_name="poller-loop"
    )


@pytest.mark.asyncio
async def test_log_task_exception_ignores_cancelled() -> None:
    task = asyncio.create_task(_hang())
    await cancel_task(task)
    logger = MagicMock()
    assert log_task_exception(task, logger, "test.cancel") is None
    logger.error.assert_not_called()


@pytest.mark.asyncio
async def test_cancel_task_waits_for_task() -> None:
    task = asyncio.create_task(_hang())
    await asyncio.sleep(0)
    await cancel_task(task)
    assert task.cancelled()


@pytest.mark.asyncio
async def test_cancel_task_tolerates_none_and_finished() -> None:
    async def _ok() -> str:
        return "done"

    task = asyncio.create_task(_ok())
    await task
    await cancel_task(task)
    await cancel_task(None)
    assert task.result() == "done"


@pytest.mark.asyncio
async def test_cancel_task_from_inside_itself() -> None:
    async def _stop_self() -> None:
        await cancel_task(asyncio.current_task())
        await asyncio.sleep(100)

    task = asyncio.create_task(_stop_self())
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_cancel_task_propagates_caller_cancellation() -> None:
    """Cancelling the caller while it waits for teardown is not swallowed."""
    release = asyncio.Event()

    async def _slow_to_stop() -> None:
        try:
            await asyncio.sleep(100)
        except asyncio.CancelledError:
            await release.wait()
            raise

    inner = asyncio.create_task(_slow_to_stop())
    await asyncio.sleep(0)
    outer = asyncio.create_task(cancel_task(inner))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    outer.cancel()
    release.set()
    with pytest.raises(asyncio.CancelledError):
        await outer
    assert outer.cancelled()
    assert inner.done()

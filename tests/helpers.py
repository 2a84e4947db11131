"""Shared test helpers for genwatch tests: job factory and in-memory backends."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from genwatch.core.job import Job, JobStatus
from genwatch.tracking.exceptions import FetchError
from genwatch.tracking.realtime import (
    ChangeEvent,
    ChangeOperation,
    ChannelStatus,
    EventCallback,
    StatusCallback,
)
from genwatch.tracking.recovery import ControlResult

NOW = datetime(2025, 3, 14, 12, 0, 0, tzinfo=UTC)
OWNER = "user-42"


def make_job(
    job_id: str = "job-1",
    *,
    age: timedelta = timedelta(0),
    **overrides: Any,
) -> Job:
    """Build a processing job last updated ``age`` before NOW."""
    fields: dict[str, Any] = {
        "id": job_id,
        "owner_id": OWNER,
        "status": JobStatus.PROCESSING,
        "progress_percentage": 10,
        "created_at": NOW - timedelta(hours=1),
        "updated_at": NOW - age,
    }
    fields.update(overrides)
    return Job.model_validate(fields)


def upsert_event(job: Job) -> ChangeEvent:
    return ChangeEvent(operation=ChangeOperation.UPDATE, job=job)


def delete_event(job_id: str) -> ChangeEvent:
    return ChangeEvent(operation=ChangeOperation.DELETE, job_id=job_id)


class FakeClock:
    """Settable clock for components taking a ``clock`` callable."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(0.005)


# ─── Realtime ────────────────────────────────────────────────────────


StatusScript = tuple[ChannelStatus, str | None]


class FakeChannel:
    """Channel handle whose callbacks the test drives directly."""

    def __init__(self, name: str, on_event: EventCallback, on_status: StatusCallback) -> None:
        self.name = name
        self.on_event = on_event
        self.on_status = on_status
        self.closed = False

    def emit_status(self, status: ChannelStatus, reason: str | None = None) -> None:
        self.on_status(status, reason)

    def emit_event(self, event: ChangeEvent) -> None:
        self.on_event(event)

    async def close(self) -> None:
        self.closed = True


class FakeRealtimeClient:
    """RealtimeClient that records opened channels.

    Each new channel reports the next status from ``script`` on the following
    loop iteration, or ``default_status`` once the script is used up. A
    ``None`` entry leaves the channel silent. Queued ``open_errors`` are
    raised by ``open_channel`` before any script entry is consumed.
    """

    def __init__(
        self,
        script: list[StatusScript | None] | None = None,
        default_status: StatusScript | None = None,
    ) -> None:
        self.script = list(script or [])
        self.default_status = default_status
        self.open_errors: list[Exception] = []
        self.channels: list[FakeChannel] = []
        self.owner_ids: list[str] = []

    @property
    def last(self) -> FakeChannel:
        return self.channels[-1]

    @property
    def open_channels(self) -> list[FakeChannel]:
        return [c for c in self.channels if not c.closed]

    async def open_channel(
        self,
        name: str,
        *,
        owner_id: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> FakeChannel:
        if self.open_errors:
            raise self.open_errors.pop(0)
        channel = FakeChannel(name, on_event, on_status)
        self.channels.append(channel)
        self.owner_ids.append(owner_id)
        status = self.script.pop(0) if self.script else self.default_status
        if status is not None:
            asyncio.get_running_loop().call_soon(channel.emit_status, *status)
        return channel


# ─── Fetch and control ───────────────────────────────────────────────


class FakeFetcher:
    """JobFetcher serving ``jobs``; the next ``fail_times`` calls raise."""

    def __init__(self, jobs: list[Job] | None = None) -> None:
        self.jobs = list(jobs or [])
        self.calls = 0
        self.fail_times = 0
        self.error: Exception | None = None

    async def fetch_jobs(self, owner_id: str) -> list[Job]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.fail_times:
            self.fail_times -= 1
            raise FetchError("job list request failed: HTTP 503")
        return list(self.jobs)


class FakeControlApi:
    """ControlApi recording ``(action, job_id)`` calls.

    ``gate`` holds every call until it is set; ``results`` overrides the
    answer per action; ``error`` is raised instead of answering.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.results: dict[str, ControlResult] = {}
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None

    async def _call(self, action: str, job_id: str) -> ControlResult:
        self.calls.append((action, job_id))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.results.get(action, ControlResult(success=True))

    async def resume(self, job_id: str) -> ControlResult:
        return await self._call("resume", job_id)

    async def restart(self, job_id: str) -> ControlResult:
        return await self._call("restart", job_id)

    async def delete(self, job_id: str) -> ControlResult:
        return await self._call("delete", job_id)

    async def clear(self, job_id: str) -> ControlResult:
        return await self._call("clear", job_id)

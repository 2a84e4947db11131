"""Fallback poller.

Pulls the owner's job list on a fixed interval while the push channel is down.
Each snapshot is reconciled into the JobStore through the same merge rule the
push path uses. The poller stops itself as soon as a snapshot holds no active
job, judged by the effective status so a job whose counters say it is done
does not keep the loop alive.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, Protocol

from genwatch.core.config import HealthConfig, PollerConfig
from genwatch.core.job import ACTIVE_STATUSES, Job
from genwatch.core.logging import get_logger
from genwatch.tracking.exceptions import FetchError
from genwatch.tracking.health import effective_completion
from genwatch.tracking.store import JobStore
from genwatch.tracking.task_utils import cancel_task, log_task_exception
from genwatch.utils.time import Clock, utc_now

_logger = get_logger("tracking.poller")


class JobFetcher(Protocol):
    """Pulls the owner's non-cleared jobs, newest first."""

    async def fetch_jobs(self, owner_id: str) -> list[Job]: ...


class FallbackPoller:
    """Periodic pull of the job list.

    Usage::

        poller = FallbackPoller(fetcher, store, "user-42")
        poller.start()        # first poll runs immediately
        ...
        await poller.stop()
    """

    def __init__(
        self,
        fetcher: JobFetcher,
        store: JobStore,
        owner_id: str,
        config: PollerConfig | None = None,
        *,
        health: HealthConfig | None = None,
        clock: Clock = utc_now,
        on_fetch_degraded: Callable[[int], Any] | None = None,
        on_fetch_restored: Callable[[], Any] | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._store = store
        self._owner_id = owner_id
        self._config = config or PollerConfig()
        self._health = health or HealthConfig()
        self._clock = clock
        self._on_fetch_degraded = on_fetch_degraded
        self._on_fetch_restored = on_fetch_restored

        self._task: asyncio.Task[None] | None = None
        self._consecutive_failures = 0
        self._polls = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def fetch_degraded(self) -> bool:
        """Whether enough consecutive fetches failed to warrant a banner."""
        return self._consecutive_failures >= self._config.failure_banner_threshold

    @property
    def poll_count(self) -> int:
        """Fetch attempts made so far, successful or not."""
        return self._polls

    def start(self) -> bool:
        """Start the poll loop. Returns False if it is already running."""
        if self.running:
            return False
        self._task = asyncio.create_task(self._loop(), name=f"poller-{self._owner_id}")
        self._task.add_done_callback(self._on_loop_done)
        _logger.info(
            "poller.started",
            owner_id=self._owner_id,
            interval=self._config.interval_seconds,
        )
        return True

    def halt(self) -> None:
        """Request the loop to stop without waiting for it."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            _logger.info("poller.stopped", owner_id=self._owner_id)

    async def stop(self) -> None:
        """Stop the loop and wait until it has finished."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            await cancel_task(task)
            _logger.info("poller.stopped", owner_id=self._owner_id)

    async def poll_once(self) -> list[Job]:
        """Fetch and reconcile one snapshot, independent of the loop.

        Raises:
            FetchError: If the fetch failed. The failure is counted toward
                the fetch-degraded banner.
        """
        self._polls += 1
        fetched_at = self._clock()
        try:
            jobs = await self._fetcher.fetch_jobs(self._owner_id)
        except FetchError as e:
            self._record_failure(e)
            raise
        except Exception as e:
            error = FetchError(f"fetching jobs failed: {e}")
            self._record_failure(error)
            raise error from e

        self._record_success()
        changed = self._store.reconcile(jobs, fetched_at=fetched_at)
        _logger.debug("poller.poll_applied", jobs=len(jobs), changed=changed)
        return jobs

    def has_active(self, jobs: list[Job]) -> bool:
        """Whether any job in a snapshot is still queued or processing."""
        return any(
            effective_completion(job, self._health).effective_status in ACTIVE_STATUSES
            for job in jobs
            if not job.is_cleared
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _loop(self) -> None:
        interval = self._config.interval_seconds
        while True:
            try:
                jobs = await self.poll_once()
            except FetchError:
                pass
            else:
                if not self.has_active(jobs):
                    _logger.info("poller.no_active_jobs", owner_id=self._owner_id)
                    return
            await asyncio.sleep(interval)

    def _record_failure(self, error: FetchError) -> None:
        self._consecutive_failures += 1
        _logger.warning(
            "poller.fetch_failed",
            error=str(error),
            consecutive_failures=self._consecutive_failures,
        )
        if self._consecutive_failures == self._config.failure_banner_threshold:
            _logger.error(
                "poller.fetch_degraded",
                owner_id=self._owner_id,
                consecutive_failures=self._consecutive_failures,
            )
            if self._on_fetch_degraded is not None:
                self._on_fetch_degraded(self._consecutive_failures)

    def _record_success(self) -> None:
        was_degraded = self.fetch_degraded
        if self._consecutive_failures:
            _logger.info("poller.recovered", after_failures=self._consecutive_failures)
        self._consecutive_failures = 0
        if was_degraded and self._on_fetch_restored is not None:
            self._on_fetch_restored()

    def _on_loop_done(self, task: asyncio.Task[None]) -> None:
        log_task_exception(task, _logger, "poller.loop_died_unexpectedly")


__all__ = ["FallbackPoller", "JobFetcher"]

"""In-memory job store for one owner's generation jobs.

The store is the single source of truth every other tracking component reads
and writes. It holds no business logic beyond two rules:

- **Ownership**: jobs of any other owner are ignored.
- **Merge**: an incoming job replaces the stored one only if its
  ``updated_at`` is not older. Removals always apply.

Both the push channel and the fallback poller write through ``upsert`` /
``reconcile``, so a lagging poll can never regress a fresher push update and
vice versa. Observers registered with ``subscribe`` receive a ``StoreChange``
for every mutation.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from genwatch.core.job import Job, JobStatus
from genwatch.core.logging import get_logger

_logger = get_logger("tracking.store")

_MAX_CONSECUTIVE_FAILURES = 10


class ChangeKind(str, Enum):
    """Kind of store mutation."""

    UPSERT = "upsert"
    REMOVE = "remove"


@dataclass(frozen=True)
class StoreChange:
    """One applied mutation, delivered to store listeners."""

    kind: ChangeKind
    job_id: str
    previous: Job | None
    current: Job | None


StoreListener = Callable[[StoreChange], None]


class _Listener:
    __slots__ = ("callback", "consecutive_failures")

    def __init__(self, callback: StoreListener) -> None:
        self.callback = callback
        self.consecutive_failures = 0


class JobStore:
    """Per-owner collection of Job records with an observer interface.

    Usage::

        store = JobStore(owner_id="user-42")
        sub_id = store.subscribe(lambda change: print(change.kind, change.job_id))
        store.upsert(job)
        store.list()            # active view, newest first
        store.remove(job.id)
        store.unsubscribe(sub_id)
    """

    def __init__(self, owner_id: str) -> None:
        self._owner_id = owner_id
        self._jobs: dict[str, Job] = {}
        self._listeners: dict[str, _Listener] = {}

    @property
    def owner_id(self) -> str:
        return self._owner_id

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Job | None:
        """Return a job by id, cleared or not."""
        return self._jobs.get(job_id)

    def list(
        self,
        *,
        include_cleared: bool = False,
        statuses: Collection[JobStatus] | None = None,
    ) -> list[Job]:
        """Return the owner's jobs, newest first.

        Args:
            include_cleared: Include jobs the user dismissed.
            statuses: Only return jobs whose raw status is in this collection.
        """
        jobs = [
            job
            for job in self._jobs.values()
            if (include_cleared or not job.is_cleared)
            and (statuses is None or job.status in statuses)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, job: Job) -> bool:
        """Insert or merge a job.

        Returns:
            True if the store changed, False if the write was ignored
            (foreign owner, stale ``updated_at``, or identical duplicate).
        """
        if job.owner_id != self._owner_id:
            _logger.warning(
                "store.foreign_job_ignored",
                job_id=job.id,
                job_owner=job.owner_id,
                owner_id=self._owner_id,
            )
            return False

        previous = self._jobs.get(job.id)
        if previous is not None:
            if job.updated_at < previous.updated_at:
                _logger.debug(
                    "store.stale_write_ignored",
                    job_id=job.id,
                    incoming_updated_at=job.updated_at.isoformat(),
                    stored_updated_at=previous.updated_at.isoformat(),
                )
                return False
            if job == previous:
                return False

        self._jobs[job.id] = job
        self._notify(StoreChange(ChangeKind.UPSERT, job.id, previous, job))
        return True

    def upsert_many(self, jobs: Iterable[Job]) -> int:
        """Upsert each job in turn; returns how many changed the store."""
        return sum(1 for job in jobs if self.upsert(job))

    def remove(self, job_id: str) -> bool:
        """Drop a job. Always applies; removing an unknown id is a no-op."""
        previous = self._jobs.pop(job_id, None)
        if previous is None:
            return False
        _logger.debug("store.job_removed", job_id=job_id)
        self._notify(StoreChange(ChangeKind.REMOVE, job_id, previous, None))
        return True

    def mark_cleared(self, job_id: str) -> bool:
        """Flag a job as cleared after the backend confirmed the dismiss.

        The job leaves the active view but stays addressable by id.
        """
        previous = self._jobs.get(job_id)
        if previous is None or previous.is_cleared:
            return False
        current = previous.cleared()
        self._jobs[job_id] = current
        self._notify(StoreChange(ChangeKind.UPSERT, job_id, previous, current))
        return True

    def reconcile(self, snapshot: Iterable[Job], *, fetched_at: datetime) -> int:
        """Apply a full pull snapshot of the owner's non-cleared jobs.

        Every snapshot job goes through the merge rule. Jobs missing from the
        snapshot are removed when the backend must have known about their
        stored state at fetch time (stored ``updated_at`` not newer than
        ``fetched_at``); jobs already cleared locally are expected to be
        missing and are kept.

        Args:
            snapshot: Jobs returned by the pull endpoint.
            fetched_at: When the fetch request was issued.

        Returns:
            Number of store changes applied.
        """
        jobs = list(snapshot)
        changed = self.upsert_many(jobs)
        seen = {job.id for job in jobs}
        vanished = [
            job.id
            for job in self._jobs.values()
            if job.id not in seen
            and not job.is_cleared
            and job.updated_at <= fetched_at
        ]
        for job_id in vanished:
            if self.remove(job_id):
                changed += 1
        if vanished:
            _logger.info("store.vanished_jobs_removed", count=len(vanished))
        return changed

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: StoreListener) -> str:
        """Register a listener for store changes; returns a subscription id."""
        sub_id = str(uuid.uuid4())
        self._listeners[sub_id] = _Listener(listener)
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        """Remove a listener. Returns False if the id is unknown."""
        return self._listeners.pop(sub_id, None) is not None

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _notify(self, change: StoreChange) -> None:
        for sub_id, listener in list(self._listeners.items()):
            if listener.consecutive_failures >= _MAX_CONSECUTIVE_FAILURES:
                continue
            try:
                listener.callback(change)
                listener.consecutive_failures = 0
            except Exception:
                listener.consecutive_failures += 1
                _logger.warning(
                    "store.listener_error",
                    subscriber_id=sub_id,
                    job_id=change.job_id,
                    consecutive_failures=listener.consecutive_failures,
                    exc_info=True,
                )
                if listener.consecutive_failures >= _MAX_CONSECUTIVE_FAILURES:
                    _logger.error(
                        "store.listener_disabled",
                        subscriber_id=sub_id,
                        reason=f"{_MAX_CONSECUTIVE_FAILURES} consecutive failures",
                    )


__all__ = ["ChangeKind", "JobStore", "StoreChange", "StoreListener"]

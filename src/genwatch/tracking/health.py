"""Health classification of tracked jobs.

Pure functions over a Job and a clock reading. Nothing here touches the store
or caches a result: every projection is recomputed from the job's fields, so
classification is always a function of the latest merged state.

Classification runs on the *effective* status. A job whose pipeline finished
every task but never wrote a terminal status ("status drift") is promoted to
completed or failed from its counters, and is never reported as stalled.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from genwatch.core.config import HealthConfig
from genwatch.core.job import Job, JobStatus
from genwatch.core.logging import get_logger
from genwatch.tracking.exceptions import DataInvariantWarning

_logger = get_logger("tracking.health")

_DEFAULT_CONFIG = HealthConfig()

_MAX_REPORTED = 1024
_reported: OrderedDict[tuple[str, datetime], None] = OrderedDict()
"""Recently logged inconsistent job revisions, oldest first."""


class HealthStatus(str, Enum):
    """Derived liveness of a job."""

    HEALTHY = "healthy"
    STALLED = "stalled"
    STUCK = "stuck"
    FAILED = "failed"
    ABANDONED = "abandoned"


class RecoveryAction(str, Enum):
    """Action a user can take on a job."""

    RESUME = "resume"
    RESTART = "restart"
    DELETE = "delete"
    DELETE_AND_RETRY = "delete_and_retry"
    NONE = "none"


NEEDS_ATTENTION = frozenset(
    {HealthStatus.STALLED, HealthStatus.STUCK, HealthStatus.FAILED, HealthStatus.ABANDONED}
)
"""Health statuses for which resume/restart is permitted."""


@dataclass(frozen=True)
class Completion:
    """Outcome of the effective-completion check."""

    effective_status: JobStatus
    effectively_complete: bool
    success_rate: float | None


@dataclass(frozen=True)
class JobView:
    """Projection of one job as shown to the user."""

    job: Job
    health_status: HealthStatus | None
    effective_status: JobStatus
    success_rate: float | None
    effectively_complete: bool
    recommended_action: RecoveryAction
    display_progress: int

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def needs_attention(self) -> bool:
        return self.health_status in NEEDS_ATTENTION


def check_counters(job: Job) -> DataInvariantWarning | None:
    """Return a warning if the job's task counters contradict each other.

    Only a full set of counters is checked: they must add up to
    ``total_tasks``. Partial counters are taken as reported, with the
    missing ones unknown.
    """
    if not job.counters_known:
        return None
    counted = (
        (job.completed_tasks or 0)
        + (job.failed_tasks or 0)
        + (job.pending_tasks or 0)
        + (job.running_tasks or 0)
    )
    if counted != job.total_tasks:
        return DataInvariantWarning(
            job.id,
            f"task counters sum to {counted} but total_tasks is {job.total_tasks}",
        )
    return None


def _known_total(job: Job) -> int | None:
    """Total task count, or None when absent or inconsistent."""
    if job.total_tasks is None:
        return None
    warning = check_counters(job)
    if warning is not None:
        _report_inconsistency(job, warning)
        return None
    return job.total_tasks


def _report_inconsistency(job: Job, warning: DataInvariantWarning) -> None:
    # Projections are recomputed on every read; log each job revision once
    key = (job.id, job.updated_at)
    if key in _reported:
        _reported.move_to_end(key)
        return
    _reported[key] = None
    if len(_reported) > _MAX_REPORTED:
        _reported.popitem(last=False)
    _logger.warning(
        "health.counters_inconsistent",
        job_id=job.id,
        detail=warning.detail,
        total_tasks=job.total_tasks,
        completed_tasks=job.completed_tasks,
        failed_tasks=job.failed_tasks,
    )


def success_rate(job: Job) -> float | None:
    """``completed / total`` when the total is known, positive and consistent.

    Capped at 1.0 for pipelines that over-report completed tasks.
    """
    total = _known_total(job)
    if not total or job.completed_tasks is None:
        return None
    return min(job.completed_tasks / total, 1.0)


def effective_completion(job: Job, config: HealthConfig = _DEFAULT_CONFIG) -> Completion:
    """Derive the effective status of a job from its raw status and counters.

    A processing job whose completed and failed tasks account for the whole
    total, with nothing pending or running, is promoted: completed when its
    success rate reaches ``config.completion_success_rate``, failed otherwise.
    The job itself is left untouched.
    """
    rate = success_rate(job)

    if job.status is JobStatus.COMPLETED:
        return Completion(JobStatus.COMPLETED, True, rate)
    if job.status is not JobStatus.PROCESSING or rate is None:
        return Completion(job.status, False, rate)

    total = job.total_tasks or 0
    finished = (job.completed_tasks or 0) + (job.failed_tasks or 0)
    in_flight = (job.pending_tasks or 0) + (job.running_tasks or 0)
    if finished < total or in_flight:
        return Completion(job.status, False, rate)

    promoted = (
        JobStatus.COMPLETED if rate >= config.completion_success_rate else JobStatus.FAILED
    )
    _logger.debug(
        "health.status_drift_promoted",
        job_id=job.id,
        effective_status=promoted.value,
        success_rate=round(rate, 3),
    )
    return Completion(promoted, True, rate)


def _age(job: Job, now: datetime) -> timedelta:
    return max(now - job.updated_at, timedelta(0))


def classify(
    job: Job,
    now: datetime,
    config: HealthConfig = _DEFAULT_CONFIG,
    *,
    completion: Completion | None = None,
) -> HealthStatus | None:
    """Classify a job's health at ``now``.

    Returns None for jobs with nothing to judge (queued, completed, cancelled).
    A processing job is healthy up to and including ``stalled_after``, stalled
    strictly between the two thresholds and stuck from ``stuck_after`` on.
    """
    if completion is None:
        completion = effective_completion(job, config)
    status = completion.effective_status

    if status is JobStatus.FAILED:
        return HealthStatus.FAILED
    if status is not JobStatus.PROCESSING:
        return None

    age = _age(job, now)
    abandoned_after = config.abandoned_after
    if abandoned_after is not None and age >= abandoned_after:
        return HealthStatus.ABANDONED
    if age >= config.stuck_after:
        return HealthStatus.STUCK
    if age > config.stalled_after:
        return HealthStatus.STALLED
    return HealthStatus.HEALTHY


def recommend_action(
    health: HealthStatus | None,
    rate: float | None,
    config: HealthConfig = _DEFAULT_CONFIG,
) -> RecoveryAction:
    """Suggest a recovery action for a health status."""
    if health is HealthStatus.STALLED:
        return RecoveryAction.RESUME
    if health is HealthStatus.STUCK:
        return RecoveryAction.RESTART
    if health in (HealthStatus.FAILED, HealthStatus.ABANDONED):
        if rate is not None and rate < config.low_success_rate:
            return RecoveryAction.DELETE_AND_RETRY
        return RecoveryAction.RESTART
    return RecoveryAction.NONE


def display_progress(job: Job, completion: Completion) -> int:
    """Progress percentage shown to the user.

    Counter-derived when the counters are usable, the pipeline's own
    ``progress_percentage`` otherwise.
    """
    if completion.effectively_complete:
        return 100
    total = _known_total(job)
    if total and (job.completed_tasks is not None or job.failed_tasks is not None):
        finished = (job.completed_tasks or 0) + (job.failed_tasks or 0)
        return min(100, round(100 * finished / total))
    return job.progress_percentage


def project(job: Job, now: datetime, config: HealthConfig = _DEFAULT_CONFIG) -> JobView:
    """Build the UI projection of a job."""
    completion = effective_completion(job, config)
    health = classify(job, now, config, completion=completion)
    return JobView(
        job=job,
        health_status=health,
        effective_status=completion.effective_status,
        success_rate=completion.success_rate,
        effectively_complete=completion.effectively_complete,
        recommended_action=recommend_action(health, completion.success_rate, config),
        display_progress=display_progress(job, completion),
    )


__all__ = [
    "NEEDS_ATTENTION",
    "Completion",
    "HealthStatus",
    "JobView",
    "RecoveryAction",
    "check_counters",
    "classify",
    "display_progress",
    "effective_completion",
    "project",
    "recommend_action",
    "success_rate",
]

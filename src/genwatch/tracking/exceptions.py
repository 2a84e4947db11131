"""Exception hierarchy for job tracking.

All tracking exceptions inherit from TrackingError so callers can catch broad
(TrackingError) or narrow (e.g. RecoveryInProgressError). None of them is
fatal to a tracking session: each is caught at the component that produced it
and turned into a state change or a notification.
"""

from __future__ import annotations


class TrackingError(Exception):
    """Base exception for all tracking errors."""


class TransportError(TrackingError):
    """Raised when the push channel cannot be opened or errors out.

    Retried with backoff by the subscription manager, then escalated to
    poll-only tracking.
    """

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class FetchError(TrackingError):
    """Raised when pulling the job list fails.

    Retried on the next poll tick; repeated failures raise a banner.
    """


class RecoveryDispatchError(TrackingError):
    """Raised when a recovery command could not be carried out.

    The job's classification is left unchanged and the user may try again.
    """

    def __init__(self, message: str, *, job_id: str, action: str) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.action = action


class RecoveryInProgressError(RecoveryDispatchError):
    """Raised when the same recovery action is already in flight for a job."""


class RecoveryNotAllowedError(RecoveryDispatchError):
    """Raised when resume/restart is requested for a job that needs no attention."""


class DataInvariantWarning(UserWarning):
    """Inconsistent task counters on a job.

    Never raised. The health classifier builds one, logs it, and treats the
    job's task total as unknown.
    """

    def __init__(self, job_id: str, detail: str) -> None:
        super().__init__(f"job {job_id}: {detail}")
        self.job_id = job_id
        self.detail = detail


__all__ = [
    "DataInvariantWarning",
    "FetchError",
    "RecoveryDispatchError",
    "RecoveryInProgressError",
    "RecoveryNotAllowedError",
    "TrackingError",
    "TransportError",
]

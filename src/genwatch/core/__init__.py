"""Core building blocks shared by every genwatch component."""

from genwatch.core.job import ACTIVE_STATUSES, Job, JobStatus

__all__ = ["ACTIVE_STATUSES", "Job", "JobStatus"]

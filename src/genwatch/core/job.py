"""Job model for tracked course-generation jobs.

A Job mirrors one row of the generation pipeline's job table. The tracking
subsystem never writes job fields back (apart from the local ``is_cleared``
flag after a confirmed dismiss), so the model is tolerant on input: unknown
columns are ignored, legacy spellings are accepted, and out-of-range progress
values are clamped rather than rejected.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class JobStatus(str, Enum):
    """Raw status of a generation job as written by the pipeline."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})
"""Statuses of jobs that still have something to watch."""

# Spellings used by older pipeline versions
_STATUS_ALIASES = {
    "pending": JobStatus.QUEUED,
    "running": JobStatus.PROCESSING,
}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Job(BaseModel):
    """One asynchronous course-generation request."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    id: str = Field(min_length=1, description="Opaque job identifier")
    owner_id: str = Field(
        validation_alias=AliasChoices("owner_id", "user_id"),
        description="User the job belongs to",
    )
    status: JobStatus = Field(default=JobStatus.QUEUED)
    progress_percentage: int = Field(
        default=0,
        description="Pipeline-reported progress, clamped into 0-100",
    )
    total_tasks: int | None = Field(default=None, ge=0)
    completed_tasks: int | None = Field(default=None, ge=0)
    failed_tasks: int | None = Field(default=None, ge=0)
    pending_tasks: int | None = Field(default=None, ge=0)
    running_tasks: int | None = Field(default=None, ge=0)
    current_phase: str | None = Field(
        default=None,
        validation_alias=AliasChoices("current_phase", "current_task"),
        description="Display-only label such as 'outline' or 'lessons'",
    )
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime
    is_cleared: bool = False

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v: Any) -> Any:
        if isinstance(v, str):
            lowered = v.strip().lower()
            return _STATUS_ALIASES.get(lowered, lowered)
        return v

    @field_validator("progress_percentage", mode="before")
    @classmethod
    def _clamp_progress(cls, v: Any) -> Any:
        if v is None:
            return 0
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return max(0, min(100, round(v)))
        return v

    @field_validator("created_at", "updated_at")
    @classmethod
    def _ensure_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("is_cleared", mode="before")
    @classmethod
    def _null_is_not_cleared(cls, v: Any) -> Any:
        return False if v is None else v

    @property
    def is_active(self) -> bool:
        """Whether the raw status is queued or processing."""
        return self.status in ACTIVE_STATUSES

    @property
    def counters_known(self) -> bool:
        """Whether every task counter is present."""
        return None not in (
            self.total_tasks,
            self.completed_tasks,
            self.failed_tasks,
            self.pending_tasks,
            self.running_tasks,
        )

    def cleared(self) -> Job:
        """Return a copy flagged as cleared; timestamps are left untouched."""
        return self.model_copy(update={"is_cleared": True})


__all__ = ["ACTIVE_STATUSES", "Job", "JobStatus"]

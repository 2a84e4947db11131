"""One-shot notifications derived from job transitions and connection health.

The NotificationAggregator listens to the JobStore and publishes
NotificationContext events on the EventBus:

- completion celebration when a job's effective status first becomes completed
- partial-completion notice when it finished with some failed tasks
- failure toast when the effective status first becomes failed
- degraded/restored banners for the push channel and for fetching
- recovery feedback when a recovery request is rejected or fails

Each job transition is announced at most once. Durable markers make that hold
across reloads, and jobs first seen long after they finished are marked
without being announced.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from genwatch.core.config import HealthConfig, NotificationConfig
from genwatch.core.job import Job, JobStatus
from genwatch.core.logging import get_logger
from genwatch.tracking.health import Completion, effective_completion
from genwatch.tracking.markers import MarkerStore, MemoryMarkerStore
from genwatch.tracking.store import ChangeKind, JobStore, StoreChange
from genwatch.utils.time import Clock, utc_now

if TYPE_CHECKING:
    from genwatch.tracking.event_bus import EventBus

_logger = get_logger("tracking.notifications")


class NotificationEvent(Enum):
    """Events surfaced to the user."""

    # Job transitions
    JOB_COMPLETE = "job_complete"
    JOB_PARTIAL = "job_partial"
    JOB_FAILED = "job_failed"

    # Banners
    CONNECTION_DEGRADED = "connection_degraded"
    CONNECTION_RESTORED = "connection_restored"
    FETCH_DEGRADED = "fetch_degraded"
    FETCH_RESTORED = "fetch_restored"

    # Recovery feedback
    RECOVERY_FAILED = "recovery_failed"
    RECOVERY_IN_PROGRESS = "recovery_in_progress"


BANNER_EVENTS = frozenset(
    {NotificationEvent.CONNECTION_DEGRADED, NotificationEvent.FETCH_DEGRADED}
)
"""Events that stay visible until cleared or dismissed."""


@dataclass
class NotificationContext:
    """Payload of one notification event."""

    event: NotificationEvent
    """The event type."""

    job_id: str | None = None
    """Job the event is about; None for connection banners."""

    timestamp: datetime = field(default_factory=utc_now)

    success_rate: float | None = None
    total_tasks: int | None = None
    completed_tasks: int | None = None
    failed_tasks: int | None = None

    error_message: str | None = None
    """Job error, fetch error or recovery rejection reason."""

    action: str | None = None
    """Recovery action, for recovery feedback events."""

    extra: dict[str, Any] = field(default_factory=dict)

    def format_title(self) -> str:
        """Short title for a toast or banner."""
        titles = {
            NotificationEvent.JOB_COMPLETE: "Course generation complete",
            NotificationEvent.JOB_PARTIAL: "Course generated with some failed tasks",
            NotificationEvent.JOB_FAILED: "Course generation failed",
            NotificationEvent.CONNECTION_DEGRADED: "Live updates unavailable, polling instead",
            NotificationEvent.CONNECTION_RESTORED: "Live updates restored",
            NotificationEvent.FETCH_DEGRADED: "Unable to refresh job status",
            NotificationEvent.FETCH_RESTORED: "Job status refresh restored",
            NotificationEvent.RECOVERY_FAILED: "Recovery request failed",
            NotificationEvent.RECOVERY_IN_PROGRESS: "Recovery already in progress",
        }
        return titles.get(self.event, self.event.value)

    def format_message(self) -> str:
        """Detail line with whatever context the event carries."""
        parts: list[str] = []

        if self.job_id is not None:
            parts.append(f"Job {self.job_id}")

        if self.action is not None:
            parts.append(f"Action: {self.action}")

        if self.total_tasks is not None:
            completed = self.completed_tasks or 0
            failed = self.failed_tasks or 0
            parts.append(f"{completed}/{self.total_tasks} tasks done, {failed} failed")

        if self.success_rate is not None:
            parts.append(f"{self.success_rate:.0%} success")

        if self.error_message:
            error = self.error_message[:100]
            if len(self.error_message) > 100:
                error += "..."
            parts.append(f"Error: {error}")

        return " | ".join(parts) if parts else self.event.value


class NotificationAggregator:
    """Turns store changes and connection signals into one-shot events.

    Usage::

        aggregator = NotificationAggregator(store, bus)
        aggregator.attach()                 # start listening to the store
        aggregator.connection_degraded()    # banner
        aggregator.connection_restored()    # clears it
        aggregator.detach()
    """

    def __init__(
        self,
        store: JobStore,
        bus: EventBus,
        *,
        markers: MarkerStore | None = None,
        config: NotificationConfig | None = None,
        health: HealthConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._bus = bus
        self._markers = markers if markers is not None else MemoryMarkerStore()
        self._config = config or NotificationConfig()
        self._health = health or HealthConfig()
        self._clock = clock
        self._sub_id: str | None = None
        self._banners: set[NotificationEvent] = set()

    @property
    def banners(self) -> frozenset[NotificationEvent]:
        """Banners currently raised."""
        return frozenset(self._banners)

    def attach(self) -> None:
        """Start listening to the store. Existing jobs are not replayed."""
        if self._sub_id is None:
            self._sub_id = self._store.subscribe(self._on_store_change)

    def detach(self) -> None:
        if self._sub_id is not None:
            self._store.unsubscribe(self._sub_id)
            self._sub_id = None

    # ------------------------------------------------------------------
    # Banners
    # ------------------------------------------------------------------

    def connection_degraded(self) -> None:
        self._raise_banner(NotificationEvent.CONNECTION_DEGRADED)

    def connection_restored(self) -> None:
        self._clear_banner(
            NotificationEvent.CONNECTION_DEGRADED, NotificationEvent.CONNECTION_RESTORED
        )

    def fetch_degraded(self, consecutive_failures: int | None = None) -> None:
        extra = {}
        if consecutive_failures is not None:
            extra["consecutive_failures"] = consecutive_failures
        self._raise_banner(NotificationEvent.FETCH_DEGRADED, extra)

    def fetch_restored(self) -> None:
        self._clear_banner(NotificationEvent.FETCH_DEGRADED, NotificationEvent.FETCH_RESTORED)

    def dismiss_banner(self, event: NotificationEvent) -> bool:
        """Hide a banner at the user's request; no restored event follows."""
        if event not in self._banners:
            return False
        self._banners.discard(event)
        _logger.debug("notifications.banner_dismissed", banner=event.value)
        return True

    def recovery_feedback(
        self,
        job_id: str,
        action: str,
        *,
        in_progress: bool = False,
        error: str | None = None,
    ) -> None:
        """Report a rejected or failed recovery request."""
        if in_progress:
            event = NotificationEvent.RECOVERY_IN_PROGRESS
        else:
            event = NotificationEvent.RECOVERY_FAILED
        self._emit(
            NotificationContext(event=event, job_id=job_id, action=action, error_message=error)
        )

    def _raise_banner(self, event: NotificationEvent, extra: dict[str, Any] | None = None) -> None:
        if event in self._banners:
            return
        self._banners.add(event)
        self._emit(NotificationContext(event=event, extra=extra or {}))

    def _clear_banner(self, banner: NotificationEvent, restored: NotificationEvent) -> None:
        if banner not in self._banners:
            return
        self._banners.discard(banner)
        self._emit(NotificationContext(event=restored))

    # ------------------------------------------------------------------
    # Job transitions
    # ------------------------------------------------------------------

    def _on_store_change(self, change: StoreChange) -> None:
        job = change.current
        if change.kind is ChangeKind.REMOVE or job is None:
            self._markers.discard_job(change.job_id)
            return

        completion = effective_completion(job, self._health)
        status = completion.effective_status
        if status not in (JobStatus.COMPLETED, JobStatus.FAILED):
            return

        first_seen = change.previous is None
        announce = not job.is_cleared and (not first_seen or self._is_recent(job))

        if status is JobStatus.COMPLETED:
            self._transition(job, completion, "completed", NotificationEvent.JOB_COMPLETE, announce)
        else:
            self._transition(job, completion, "failed", NotificationEvent.JOB_FAILED, announce)

        if (
            completion.effectively_complete
            and completion.success_rate is not None
            and completion.success_rate < 1.0
        ):
            self._transition(job, completion, "partial", NotificationEvent.JOB_PARTIAL, announce)

    def _transition(
        self,
        job: Job,
        completion: Completion,
        transition: str,
        event: NotificationEvent,
        announce: bool,
    ) -> None:
        if self._markers.has(job.id, transition):
            return
        self._markers.add(job.id, transition)
        if not announce:
            _logger.debug("notifications.marker_seeded", job_id=job.id, transition=transition)
            return
        self._emit(
            NotificationContext(
                event=event,
                job_id=job.id,
                success_rate=completion.success_rate,
                total_tasks=job.total_tasks,
                completed_tasks=job.completed_tasks,
                failed_tasks=job.failed_tasks,
                error_message=job.error_message,
            )
        )

    def _is_recent(self, job: Job) -> bool:
        window = timedelta(minutes=self._config.recent_completion_minutes)
        return self._clock() - job.updated_at <= window

    def _emit(self, context: NotificationContext) -> None:
        _logger.info(
            "notifications.emitted",
            event_type=context.event.value,
            job_id=context.job_id,
        )
        self._bus.publish_nowait(context)


__all__ = [
    "BANNER_EVENTS",
    "NotificationAggregator",
    "NotificationContext",
    "NotificationEvent",
]

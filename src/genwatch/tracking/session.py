"""Tracking session: the facade a UI embeds to follow one owner's jobs.

A TrackingSession wires the store, the push subscription, the fallback
poller, the recovery dispatcher and the notification aggregator together:

- the initial load pulls the job list once, then the push channel is opened
- when the push channel fails for good the poller takes over and a
  connection-degraded banner is raised
- when the channel comes back the poller stops and the banner clears
- recovery requests and dismissals never raise; they return a RecoveryOutcome
  and emit feedback notifications when rejected

Usage::

    async with TrackingSession("user-42", fetcher=api, control=api, realtime=sse) as session:
        session.subscribe(redraw)
        for view in session.entries():
            ...
        outcome = await session.request_recovery(job_id, "resume")
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from genwatch.core.config import TrackerConfig
from genwatch.core.logging import TrackingContext, get_logger, with_context
from genwatch.tracking.event_bus import EventBus, EventCallback, EventFilter
from genwatch.tracking.exceptions import (
    FetchError,
    RecoveryDispatchError,
    RecoveryInProgressError,
)
from genwatch.tracking.health import JobView, RecoveryAction, project
from genwatch.tracking.markers import JsonMarkerStore, MarkerStore, MemoryMarkerStore
from genwatch.tracking.notifications import NotificationAggregator, NotificationEvent
from genwatch.tracking.poller import FallbackPoller, JobFetcher
from genwatch.tracking.realtime import ConnectionState, RealtimeClient, SubscriptionManager
from genwatch.tracking.recovery import ControlApi, RecoveryDispatcher
from genwatch.tracking.store import JobStore, StoreChange
from genwatch.utils.time import Clock, utc_now

_logger = get_logger("tracking.session")


class ConnectionSignal(str, Enum):
    """Connection indicator shown to the user."""

    CONNECTED = "connected"
    DEGRADED = "degraded"
    POLLING = "polling"


@dataclass(frozen=True)
class RecoveryOutcome:
    """Result of a recovery request or dismissal as seen by the UI."""

    job_id: str
    action: str
    accepted: bool
    error: str | None = None
    in_progress: bool = False
    """True when the request was rejected because the same one is in flight."""


SessionListener = Callable[[], Any]


class TrackingSession:
    """Tracks one owner's generation jobs for a UI."""

    def __init__(
        self,
        owner_id: str,
        *,
        fetcher: JobFetcher,
        control: ControlApi,
        realtime: RealtimeClient | None = None,
        config: TrackerConfig | None = None,
        markers: MarkerStore | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._owner_id = owner_id
        self._config = config or TrackerConfig()
        self._clock = clock
        self._context = TrackingContext(owner_id=owner_id)

        self._store = JobStore(owner_id)
        self._bus = EventBus(max_queue_size=self._config.notifications.max_queue_size)

        if markers is None:
            marker_file = self._config.notifications.marker_file
            if marker_file is not None:
                markers = JsonMarkerStore(marker_file, owner_id)
            else:
                markers = MemoryMarkerStore()
        self._aggregator = NotificationAggregator(
            self._store,
            self._bus,
            markers=markers,
            config=self._config.notifications,
            health=self._config.health,
            clock=clock,
        )
        self._poller = FallbackPoller(
            fetcher,
            self._store,
            owner_id,
            self._config.poller,
            health=self._config.health,
            clock=clock,
            on_fetch_degraded=self._aggregator.fetch_degraded,
            on_fetch_restored=self._aggregator.fetch_restored,
        )
        self._dispatcher = RecoveryDispatcher(
            control, self._store, health=self._config.health, clock=clock
        )
        self._manager: SubscriptionManager | None = None
        if realtime is not None and self._config.realtime.enabled:
            self._manager = SubscriptionManager(
                realtime,
                self._store,
                owner_id,
                self._config.realtime,
                on_state_change=self._on_connection_state,
            )

        self._listeners: dict[str, SessionListener] = {}
        self._store_sub_id: str | None = None
        self._started = False
        self._closed = False

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def dispatcher(self) -> RecoveryDispatcher:
        return self._dispatcher

    @property
    def connection_state(self) -> ConnectionState | None:
        """State of the push subscription; None when push is not used."""
        return self._manager.state if self._manager is not None else None

    @property
    def connection_status(self) -> ConnectionSignal:
        if self._manager is not None and self._manager.state is ConnectionState.CONNECTED:
            return ConnectionSignal.CONNECTED
        if self._poller.running:
            return ConnectionSignal.POLLING
        return ConnectionSignal.DEGRADED

    @property
    def banners(self) -> frozenset[NotificationEvent]:
        return self._aggregator.banners

    def entries(self) -> list[JobView]:
        """Projections of the owner's active (non-cleared) jobs, newest first."""
        now = self._clock()
        return [project(job, now, self._config.health) for job in self._store.list()]

    def entry(self, job_id: str) -> JobView | None:
        job = self._store.get(job_id)
        if job is None:
            return None
        return project(job, self._clock(), self._config.health)

    def available_actions(self, job_id: str) -> list[RecoveryAction]:
        view = self.entry(job_id)
        return self._dispatcher.available_actions(view) if view is not None else []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load the job list and open the push channel (or start polling)."""
        if self._started:
            return
        self._started = True
        with with_context(self._context):
            _logger.info(
                "session.starting",
                realtime=self._manager is not None,
                session_id=self._context.session_id,
            )
            await self._bus.start()
            self._aggregator.attach()
            self._store_sub_id = self._store.subscribe(self._on_store_change)

            try:
                await self._poller.poll_once()
            except FetchError as e:
                _logger.warning("session.initial_load_failed", error=str(e))

            if self._manager is not None:
                await self._manager.start()
            else:
                self._poller.start()
            self._notify_listeners()

    async def close(self) -> None:
        """Tear everything down. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        with with_context(self._context):
            if self._manager is not None:
                await self._manager.close()
            await self._poller.stop()
            self._aggregator.detach()
            if self._store_sub_id is not None:
                self._store.unsubscribe(self._store_sub_id)
                self._store_sub_id = None
            await self._bus.shutdown()
            _logger.info("session.closed")

    async def __aenter__(self) -> TrackingSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------

    async def request_recovery(
        self, job_id: str, action: RecoveryAction | str
    ) -> RecoveryOutcome:
        """Ask the backend to resume, restart or delete a job."""
        action_name = action.value if isinstance(action, RecoveryAction) else str(action)
        with with_context(self._context):
            try:
                await self._dispatcher.dispatch(job_id, action)
            except RecoveryDispatchError as e:
                return self._rejected(job_id, action_name, e)
        return RecoveryOutcome(job_id=job_id, action=action_name, accepted=True)

    async def dismiss(self, job_id: str) -> RecoveryOutcome:
        """Clear a job from the active view once the backend confirmed it."""
        with with_context(self._context):
            try:
                await self._dispatcher.dismiss(job_id)
            except RecoveryDispatchError as e:
                return self._rejected(job_id, "clear", e)
        return RecoveryOutcome(job_id=job_id, action="clear", accepted=True)

    async def refresh(self) -> bool:
        """Pull the job list now.

        Starts the poller when the pull shows active jobs and the push
        channel is not connected. Returns False if the fetch failed.
        """
        with with_context(self._context):
            try:
                jobs = await self._poller.poll_once()
            except FetchError:
                return False
            if (
                not self._closed
                and self.connection_status is not ConnectionSignal.CONNECTED
                and self._poller.has_active(jobs)
                and self._poller.start()
            ):
                self._notify_listeners()
        return True

    def dismiss_banner(self, event: NotificationEvent) -> bool:
        return self._aggregator.dismiss_banner(event)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: SessionListener) -> str:
        """Call ``listener()`` whenever entries or the connection status change."""
        sub_id = str(uuid.uuid4())
        self._listeners[sub_id] = listener
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        return self._listeners.pop(sub_id, None) is not None

    def subscribe_notifications(
        self,
        callback: EventCallback,
        *,
        event_filter: EventFilter = None,
    ) -> str:
        """Receive one-shot notification events (toasts and banners)."""
        return self._bus.subscribe(callback, event_filter=event_filter)

    def unsubscribe_notifications(self, sub_id: str) -> bool:
        return self._bus.unsubscribe(sub_id)

    def recent_notifications(self, sub_id: str) -> list[Any]:
        """Events recently delivered to a notification subscriber."""
        return self._bus.recent(sub_id)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _rejected(
        self, job_id: str, action: str, error: RecoveryDispatchError
    ) -> RecoveryOutcome:
        in_progress = isinstance(error, RecoveryInProgressError)
        self._aggregator.recovery_feedback(
            job_id, action, in_progress=in_progress, error=str(error)
        )
        return RecoveryOutcome(
            job_id=job_id,
            action=action,
            accepted=False,
            error=str(error),
            in_progress=in_progress,
        )

    def _on_connection_state(self, state: ConnectionState) -> None:
        if state is ConnectionState.FAILED:
            if self._closed:
                return
            _logger.warning("session.push_unavailable_polling")
            self._aggregator.connection_degraded()
            self._poller.start()
        elif state is ConnectionState.CONNECTED:
            self._poller.halt()
            self._aggregator.connection_restored()
        self._notify_listeners()

    def _on_store_change(self, change: StoreChange) -> None:
        self._notify_listeners()

    def _notify_listeners(self) -> None:
        for sub_id, listener in list(self._listeners.items()):
            try:
                listener()
            except Exception:
                _logger.warning("session.listener_error", subscriber_id=sub_id, exc_info=True)


__all__ = [
    "ConnectionSignal",
    "RecoveryOutcome",
    "SessionListener",
    "TrackingSession",
]

"""Delivery of one-shot tracking notifications to UI subscribers.

The aggregator publishes synchronously from store listeners and connection
callbacks. A drain task hands the events to subscribers on the event loop in
publish order, so the complete and partial notices of one job always arrive
in the order they were derived.

Banner events are coalesced while they wait for delivery: a repeat of a
queued banner event is dropped, and a banner raised and cleared again before
anyone saw it is dropped together with its clearing event. Job and recovery
events are never coalesced.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from genwatch.core.constants import EVENT_BUS_MAX_QUEUE_SIZE
from genwatch.core.logging import get_logger
from genwatch.tracking.notifications import NotificationContext, NotificationEvent
from genwatch.tracking.task_utils import cancel_task, log_task_exception

_logger = get_logger("tracking.event_bus")

EventFilter = Callable[[NotificationContext], bool] | None
EventCallback = Callable[[NotificationContext], Any]

_MAX_CONSECUTIVE_FAILURES = 10

# banner event -> (banner kind, raises the banner)
_BANNER_EVENTS: dict[NotificationEvent, tuple[str, bool]] = {
    NotificationEvent.CONNECTION_DEGRADED: ("connection", True),
    NotificationEvent.CONNECTION_RESTORED: ("connection", False),
    NotificationEvent.FETCH_DEGRADED: ("fetch", True),
    NotificationEvent.FETCH_RESTORED: ("fetch", False),
}


@dataclass
class _Subscription:
    callback: EventCallback
    event_filter: EventFilter
    history: deque[NotificationContext]
    failures: int = 0

    @property
    def disabled(self) -> bool:
        return self.failures >= _MAX_CONSECUTIVE_FAILURES


class EventBus:
    """Notification bus with banner coalescing and per-subscriber history.

    Usage::

        bus = EventBus(max_queue_size=100)
        await bus.start()
        sub_id = bus.subscribe(
            show_toast,
            event_filter=lambda ctx: ctx.event is NotificationEvent.JOB_COMPLETE,
        )
        bus.publish_nowait(context)
        ...
        await bus.shutdown()   # delivers whatever is still pending

    ``max_queue_size`` bounds the history kept per subscriber (see
    ``recent``); the pending queue itself is not bounded.
    """

    def __init__(self, *, max_queue_size: int = EVENT_BUS_MAX_QUEUE_SIZE) -> None:
        self._history_size = max_queue_size
        self._subscriptions: dict[str, _Subscription] = {}
        self._pending: deque[NotificationContext] = deque()
        self._delivery_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._drain_task: asyncio.Task[None] | None = None
        self._running = False
        self._coalesced = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def coalesced_count(self) -> int:
        """Banner events dropped as duplicates or flickers so far."""
        return self._coalesced

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        task = asyncio.create_task(self._drain_loop(), name="event-bus-drain")
        task.add_done_callback(self._on_drain_done)
        self._drain_task = task

    async def shutdown(self) -> None:
        """Stop the drain task and deliver whatever is still pending."""
        self._running = False
        task, self._drain_task = self._drain_task, None
        await cancel_task(task)
        await self.drain()
        _logger.debug("event_bus.shutdown", remaining_subscribers=len(self._subscriptions))

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish_nowait(self, event: NotificationContext) -> None:
        """Queue an event. Dropped when the bus is not running."""
        if not self._running:
            _logger.debug("event_bus.dropped_not_running", event_type=event.event.value)
            return
        if self._absorbed(event):
            self._coalesced += 1
            return
        self._pending.append(event)
        self._wakeup.set()

    async def publish(self, event: NotificationContext) -> None:
        self.publish_nowait(event)

    def _absorbed(self, event: NotificationContext) -> bool:
        """Coalesce a banner event against the undelivered one of its kind."""
        banner = _BANNER_EVENTS.get(event.event)
        if banner is None:
            return False
        kind, raises = banner
        for queued in reversed(self._pending):
            queued_banner = _BANNER_EVENTS.get(queued.event)
            if queued_banner is None or queued_banner[0] != kind:
                continue
            if queued_banner[1] == raises:
                _logger.debug("event_bus.banner_repeat_dropped", event_type=event.event.value)
            else:
                # Raised and cleared before delivery: nobody needs to see either
                self._pending.remove(queued)
                _logger.debug("event_bus.banner_flicker_dropped", banner=kind)
            return True
        return False

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, callback: EventCallback, *, event_filter: EventFilter = None) -> str:
        """Register a sync or async callback; returns the subscription id."""
        sub_id = str(uuid.uuid4())
        self._subscriptions[sub_id] = _Subscription(
            callback=callback,
            event_filter=event_filter,
            history=deque(maxlen=self._history_size),
        )
        _logger.debug("event_bus.subscribed", sub_id=sub_id)
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        if self._subscriptions.pop(sub_id, None) is None:
            return False
        _logger.debug("event_bus.unsubscribed", sub_id=sub_id)
        return True

    def recent(self, sub_id: str) -> list[NotificationContext]:
        """Events recently delivered to a subscriber, oldest first."""
        sub = self._subscriptions.get(sub_id)
        return list(sub.history) if sub is not None else []

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def drain(self) -> None:
        """Deliver every pending event now, in publish order."""
        async with self._delivery_lock:
            while self._pending:
                await self._deliver(self._pending.popleft())

    async def _drain_loop(self) -> None:
        while self._running:
            await self._wakeup.wait()
            self._wakeup.clear()
            await self.drain()

    async def _deliver(self, event: NotificationContext) -> None:
        for sub_id, sub in list(self._subscriptions.items()):
            if sub.disabled or not self._accepts(sub_id, sub, event):
                continue
            sub.history.append(event)
            try:
                result = sub.callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                sub.failures += 1
                _logger.warning(
                    "event_bus.subscriber_error",
                    subscriber_id=sub_id,
                    event_type=event.event.value,
                    consecutive_failures=sub.failures,
                    exc_info=True,
                )
                if sub.disabled:
                    _logger.error(
                        "event_bus.subscriber_disabled",
                        subscriber_id=sub_id,
                        reason=f"{_MAX_CONSECUTIVE_FAILURES} consecutive failures",
                    )
            else:
                sub.failures = 0

    def _accepts(self, sub_id: str, sub: _Subscription, event: NotificationContext) -> bool:
        if sub.event_filter is None:
            return True
        try:
            return bool(sub.event_filter(event))
        except Exception:
            _logger.warning(
                "event_bus.filter_error",
                subscriber_id=sub_id,
                event_type=event.event.value,
                exc_info=True,
            )
            return False

    def _on_drain_done(self, task: asyncio.Task[None]) -> None:
        log_task_exception(task, _logger, "event_bus.drain_failed")


__all__ = ["EventBus", "EventCallback", "EventFilter"]

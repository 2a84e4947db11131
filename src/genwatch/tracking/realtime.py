"""Realtime subscription manager.

Keeps one push channel per owner open and feeds its change events into the
JobStore. Channel errors are retried with capped exponential backoff; once the
retries are exhausted the manager reports ``failed`` (the session then falls
back to polling) and keeps probing with a fresh channel at a slow interval.

Every channel gets a unique token. Status and event callbacks carry the token
of the channel that produced them, and anything from a superseded channel is
dropped, so a slow close of an old channel can never flip the state of its
replacement.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable
from enum import Enum
from functools import partial
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, model_validator

from genwatch.core.config import RealtimeConfig
from genwatch.core.job import Job
from genwatch.core.logging import get_logger
from genwatch.tracking.exceptions import TransportError
from genwatch.tracking.store import JobStore
from genwatch.tracking.task_utils import cancel_task, log_task_exception

_logger = get_logger("tracking.realtime")

_channel_seq = itertools.count(1)


class ChannelStatus(str, Enum):
    """Status reported by a push channel."""

    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class ChangeOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """A row change pushed by the backend.

    Inserts and updates carry the full job; deletes may carry only its id.
    """

    model_config = ConfigDict(frozen=True)

    operation: ChangeOperation
    job: Job | None = None
    job_id: str | None = None

    @model_validator(mode="after")
    def _require_target(self) -> ChangeEvent:
        if self.job is None and self.job_id is None:
            raise ValueError("change event needs a job or a job_id")
        if self.operation is not ChangeOperation.DELETE and self.job is None:
            raise ValueError(f"{self.operation.value} event needs the job row")
        return self

    @property
    def target_id(self) -> str:
        if self.job is not None:
            return self.job.id
        if self.job_id is None:
            raise ValueError("change event has neither a job nor a job_id")
        return self.job_id


EventCallback = Callable[[ChangeEvent], None]
StatusCallback = Callable[[ChannelStatus, str | None], None]


class RealtimeChannel(Protocol):
    """An open push channel."""

    name: str

    async def close(self) -> None: ...


class RealtimeClient(Protocol):
    """Opens push channels scoped to one owner's jobs.

    ``on_status`` receives the channel status and an optional reason string
    (for errors). Both callbacks are invoked on the event loop.
    """

    async def open_channel(
        self,
        name: str,
        *,
        owner_id: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> RealtimeChannel: ...


class ConnectionState(str, Enum):
    """Lifecycle state of the subscription manager."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RETRYING = "retrying"
    FAILED = "failed"
    CLOSED = "closed"


class SubscriptionManager:
    """Owns the push channel of one tracking session.

    Lifecycle:
        1. ``start()`` opens the first channel (state ``connecting``).
        2. ``SUBSCRIBED`` moves to ``connected`` and resets the retry counter.
        3. ``CHANNEL_ERROR``/``TIMED_OUT`` schedule a reconnect
           (``retrying``) until ``max_retries`` is used up, then ``failed``.
        4. ``close()`` cancels timers and closes the channel (``closed``).
    """

    def __init__(
        self,
        client: RealtimeClient,
        store: JobStore,
        owner_id: str,
        config: RealtimeConfig | None = None,
        *,
        on_state_change: Callable[[ConnectionState], Any] | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._owner_id = owner_id
        self._config = config or RealtimeConfig()
        self._on_state_change = on_state_change

        self._state = ConnectionState.IDLE
        self._channel: RealtimeChannel | None = None
        self._active_token: int | None = None
        self._attempt = 0
        self._closed = False
        self._lock = asyncio.Lock()

        self._retry_task: asyncio.Task[None] | None = None
        self._probe_task: asyncio.Task[None] | None = None
        self._watchdog_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def retry_attempt(self) -> int:
        """Reconnect attempts used since the last successful subscribe."""
        return self._attempt

    @property
    def channel_name(self) -> str | None:
        return self._channel.name if self._channel is not None else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open the first channel. A no-op unless the manager is idle."""
        if self._state is not ConnectionState.IDLE:
            return
        _logger.info("realtime.starting", owner_id=self._owner_id)
        self._set_state(ConnectionState.CONNECTING)
        await self._open_channel()

    async def close(self) -> None:
        """Tear the subscription down. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        for task in (self._retry_task, self._probe_task, self._watchdog_task):
            await cancel_task(task)
        self._retry_task = self._probe_task = self._watchdog_task = None

        async with self._lock:
            await self._close_current()
        self._set_state(ConnectionState.CLOSED)
        _logger.info("realtime.closed", owner_id=self._owner_id)

    # ------------------------------------------------------------------
    # Channel handling
    # ------------------------------------------------------------------

    def _channel_name(self, token: int) -> str:
        return f"{self._config.channel_prefix}-{self._owner_id}-{token}"

    async def _open_channel(self) -> None:
        failure: Exception | None = None
        async with self._lock:
            if self._closed:
                return
            await self._close_current()

            token = next(_channel_seq)
            self._active_token = token
            name = self._channel_name(token)
            self._start_watchdog(token)
            _logger.debug("realtime.channel_opening", channel=name, attempt=self._attempt)

            try:
                channel = await self._client.open_channel(
                    name,
                    owner_id=self._owner_id,
                    on_event=partial(self._handle_event, token),
                    on_status=partial(self._handle_status, token),
                )
            except Exception as e:
                failure = e
            else:
                if self._closed or self._active_token != token:
                    # Teardown started (or the channel already failed) while opening
                    await self._close_quietly(channel)
                else:
                    self._channel = channel

        if failure is not None:
            reason = failure.reason if isinstance(failure, TransportError) else str(failure)
            _logger.warning(
                "realtime.channel_open_failed",
                error=str(failure),
                error_type=type(failure).__name__,
                reason=reason,
            )
            self._handle_status(token, ChannelStatus.CHANNEL_ERROR, reason)

    async def _close_current(self) -> None:
        channel, self._channel = self._channel, None
        self._active_token = None
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            self._watchdog_task = None
        if channel is not None:
            await self._close_quietly(channel)

    async def _close_quietly(self, channel: RealtimeChannel) -> None:
        try:
            await channel.close()
        except Exception:
            _logger.warning("realtime.channel_close_failed", channel=channel.name, exc_info=True)

    def _start_watchdog(self, token: int) -> None:
        timeout = self._config.subscribe_timeout_seconds
        if timeout is None:
            return
        task = asyncio.create_task(
            self._watch_subscribe(token, timeout), name=f"realtime-watchdog-{token}"
        )
        task.add_done_callback(self._on_task_done)
        self._watchdog_task = task

    async def _watch_subscribe(self, token: int, timeout: float) -> None:
        await asyncio.sleep(timeout)
        self._watchdog_task = None
        _logger.warning("realtime.subscribe_timeout", timeout_seconds=timeout)
        self._handle_status(token, ChannelStatus.TIMED_OUT, "subscribe acknowledgment timeout")

    def _cancel_watchdog(self) -> None:
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            self._watchdog_task = None

    # ------------------------------------------------------------------
    # Channel callbacks
    # ------------------------------------------------------------------

    def _handle_event(self, token: int, event: ChangeEvent) -> None:
        if self._closed or token != self._active_token:
            _logger.debug("realtime.stale_event_ignored", job_id=event.target_id)
            return

        job = event.job
        if event.operation is ChangeOperation.DELETE or job is None:
            self._store.remove(event.target_id)
            return

        # A cleared job is stored as such, which takes it out of the active view
        self._store.upsert(job)

    def _handle_status(self, token: int, status: ChannelStatus, reason: str | None = None) -> None:
        if self._closed or token != self._active_token:
            _logger.debug("realtime.stale_status_ignored", status=status.value)
            return

        if status is ChannelStatus.SUBSCRIBED:
            self._cancel_watchdog()
            if self._attempt or self._state is ConnectionState.FAILED:
                _logger.info(
                    "realtime.reconnected",
                    owner_id=self._owner_id,
                    after_attempts=self._attempt,
                )
            self._attempt = 0
            self._set_state(ConnectionState.CONNECTED)
            return

        self._cancel_watchdog()
        self._handle_failure(status, reason)

    def _handle_failure(self, status: ChannelStatus, reason: str | None) -> None:
        if self._state is ConnectionState.FAILED:
            # A recovery probe (or the exhausted channel) failed again
            _logger.debug("realtime.probe_failed", status=status.value, reason=reason)
            return

        if reason is not None and reason.upper() in self._config.non_retryable_reasons:
            _logger.error(
                "realtime.non_retryable_error",
                owner_id=self._owner_id,
                status=status.value,
                reason=reason,
            )
            self._fail()
            return

        self._attempt += 1
        if self._attempt > self._config.max_retries:
            _logger.warning(
                "realtime.retries_exhausted",
                owner_id=self._owner_id,
                max_retries=self._config.max_retries,
                last_status=status.value,
            )
            self._fail()
            return

        delay = self._config.backoff_delay(self._attempt)
        _logger.info(
            "realtime.retry_scheduled",
            attempt=self._attempt,
            max_retries=self._config.max_retries,
            delay_seconds=delay,
            status=status.value,
            reason=reason,
        )
        # Further statuses of the failing channel are superseded by the retry
        self._active_token = None
        self._set_state(ConnectionState.RETRYING)
        self._retry_task = asyncio.create_task(
            self._retry_after(delay), name=f"realtime-retry-{self._attempt}"
        )
        self._retry_task.add_done_callback(self._on_task_done)

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_task = None
        if self._closed:
            return
        await self._open_channel()

    def _fail(self) -> None:
        self._set_state(ConnectionState.FAILED)
        interval = self._config.recovery_interval_seconds
        if interval is None or self._closed:
            return
        if self._probe_task is None or self._probe_task.done():
            self._probe_task = asyncio.create_task(
                self._probe_loop(interval), name="realtime-probe"
            )
            self._probe_task.add_done_callback(self._on_task_done)

    async def _probe_loop(self, interval: float) -> None:
        while not self._closed and self._state is ConnectionState.FAILED:
            await asyncio.sleep(interval)
            if self._closed or self._state is not ConnectionState.FAILED:
                break
            _logger.info("realtime.probe_started", owner_id=self._owner_id)
            try:
                await self._open_channel()
            except Exception:
                _logger.exception("realtime.probe_error", owner_id=self._owner_id)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        _logger.debug("realtime.state_changed", previous=previous.value, state=state.value)
        if self._on_state_change is None:
            return
        try:
            self._on_state_change(state)
        except Exception:
            _logger.warning("realtime.state_listener_error", state=state.value, exc_info=True)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        log_task_exception(task, _logger, "realtime.task_failed")


__all__ = [
    "ChangeEvent",
    "ChangeOperation",
    "ChannelStatus",
    "ConnectionState",
    "EventCallback",
    "RealtimeChannel",
    "RealtimeClient",
    "StatusCallback",
    "SubscriptionManager",
]

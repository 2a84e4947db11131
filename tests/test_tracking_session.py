"""Tests for genwatch.tracking.session.

End-to-end scenarios through the session facade with in-memory backends:
initial load, push updates, fallback to polling after the channel gives up,
reconnection, recovery requests and dismissal.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from genwatch.core.config import RealtimeConfig, TrackerConfig
from genwatch.core.job import JobStatus
from genwatch.tracking.exceptions import FetchError
from genwatch.tracking.health import HealthStatus, RecoveryAction
from genwatch.tracking.markers import JsonMarkerStore, MemoryMarkerStore
from genwatch.tracking.notifications import NotificationContext, NotificationEvent
from genwatch.tracking.realtime import ChannelStatus, ConnectionState
from genwatch.tracking.recovery import ControlResult
from genwatch.tracking.session import ConnectionSignal, TrackingSession
from tests.helpers import (
    OWNER,
    FakeRealtimeClient,
    make_job,
    upsert_event,
    wait_until,
)

SUBSCRIBED = (ChannelStatus.SUBSCRIBED, None)
ERROR = (ChannelStatus.CHANNEL_ERROR, "connection reset")


def _session(fetcher, control, clock, config, realtime=None) -> TrackingSession:
    return TrackingSession(
        OWNER,
        fetcher=fetcher,
        control=control,
        realtime=realtime,
        config=config,
        markers=MemoryMarkerStore(),
        clock=clock,
    )


class TestStartup:
    """Tests for the initial load and channel selection."""

    @pytest.mark.asyncio
    async def test_initial_load_then_push(self, fetcher, control, clock, tracker_config):
        fetcher.jobs = [make_job("a"), make_job("b", status="completed")]
        client = FakeRealtimeClient(script=[SUBSCRIBED])

        async with _session(fetcher, control, clock, tracker_config, client) as session:
            assert fetcher.calls == 1
            assert {v.job_id for v in session.entries()} == {"a", "b"}
            await wait_until(lambda: session.connection_status is ConnectionSignal.CONNECTED)
            assert session.connection_state is ConnectionState.CONNECTED

        assert session.connection_state is ConnectionState.CLOSED
        assert client.last.closed

    @pytest.mark.asyncio
    async def test_poll_only_without_realtime(self, fetcher, control, clock, tracker_config):
        fetcher.jobs = [make_job()]
        async with _session(fetcher, control, clock, tracker_config) as session:
            assert session.connection_state is None
            assert session.connection_status is ConnectionSignal.POLLING
            await wait_until(lambda: fetcher.calls >= 3)

    @pytest.mark.asyncio
    async def test_realtime_disabled_in_config(self, fetcher, control, clock, tracker_config):
        config = tracker_config.model_copy(
            update={"realtime": RealtimeConfig(enabled=False)}
        )
        client = FakeRealtimeClient(script=[SUBSCRIBED])
        async with _session(fetcher, control, clock, config, client) as session:
            assert session.connection_state is None
        assert client.channels == []

    @pytest.mark.asyncio
    async def test_initial_load_failure_is_not_fatal(
        self, fetcher, control, clock, tracker_config
    ):
        fetcher.fail_times = 1
        client = FakeRealtimeClient(script=[SUBSCRIBED])
        async with _session(fetcher, control, clock, tracker_config, client) as session:
            assert session.entries() == []
            await wait_until(lambda: session.connection_status is ConnectionSignal.CONNECTED)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, fetcher, control, clock, tracker_config):
        session = _session(fetcher, control, clock, tracker_config)
        await session.start()
        await session.close()
        await session.close()
        assert session.store.listener_count == 0

    @pytest.mark.asyncio
    async def test_entries_hide_cleared_and_project_health(
        self, fetcher, control, clock, tracker_config
    ):
        fetcher.jobs = [
            make_job("stalled", age=timedelta(minutes=7)),
            make_job("cleared", status="completed", is_cleared=True),
        ]
        async with _session(fetcher, control, clock, tracker_config) as session:
            views = session.entries()
            assert [v.job_id for v in views] == ["stalled"]
            assert views[0].health_status is HealthStatus.STALLED
            assert session.entry("cleared") is not None
            assert session.entry("missing") is None
            assert session.available_actions("stalled") == [
                RecoveryAction.RESUME,
                RecoveryAction.RESTART,
                RecoveryAction.DELETE,
            ]
            assert session.available_actions("missing") == []


class TestFallbackAndReconnect:
    """Push failure hands over to polling; reconnection hands back."""

    @pytest.mark.asyncio
    async def test_push_fails_then_polls_then_reconnects(
        self, fetcher, control, clock, tracker_config
    ):
        config = tracker_config.model_copy(
            update={
                "realtime": RealtimeConfig(
                    backoff_base_seconds=0.01,
                    backoff_max_seconds=0.05,
                    subscribe_timeout_seconds=None,
                    recovery_interval_seconds=0.05,
                )
            }
        )
        fetcher.jobs = [make_job(status="queued", age=timedelta(seconds=30))]
        client = FakeRealtimeClient(script=[SUBSCRIBED])
        notifications: list[NotificationContext] = []

        async with _session(fetcher, control, clock, config, client) as session:
            session.subscribe_notifications(notifications.append)
            await wait_until(lambda: session.connection_status is ConnectionSignal.CONNECTED)
            assert session.store.get("job-1").status is JobStatus.QUEUED

            # Push moves the job to processing at 10%
            client.last.emit_event(
                upsert_event(make_job(age=timedelta(seconds=20), progress_percentage=10))
            )
            assert session.entry("job-1").display_progress == 10

            # The channel fails, and its three reconnects fail too
            fetcher.jobs = [make_job(age=timedelta(seconds=10), progress_percentage=55)]
            client.default_status = ERROR
            client.last.emit_status(*ERROR)
            await wait_until(lambda: session.connection_state is ConnectionState.FAILED)
            assert len(client.channels) >= 4

            # The poller takes over and reflects the backend state
            await wait_until(lambda: session.store.get("job-1").progress_percentage == 55)
            assert session.connection_status is ConnectionSignal.POLLING
            assert NotificationEvent.CONNECTION_DEGRADED in session.banners

            # A recovery probe gets through
            client.default_status = SUBSCRIBED
            await wait_until(lambda: session.connection_status is ConnectionSignal.CONNECTED)
            assert NotificationEvent.CONNECTION_DEGRADED not in session.banners

            polls = fetcher.calls
            await asyncio.sleep(0.1)
            assert fetcher.calls == polls
            assert session.entry("job-1").display_progress == 55

        events = [ctx.event for ctx in notifications]
        assert events == [
            NotificationEvent.CONNECTION_DEGRADED,
            NotificationEvent.CONNECTION_RESTORED,
        ]

    @pytest.mark.asyncio
    async def test_poller_stops_when_work_is_done(self, fetcher, control, clock, tracker_config):
        fetcher.jobs = [make_job()]
        client = FakeRealtimeClient(default_status=ERROR)
        async with _session(fetcher, control, clock, tracker_config, client) as session:
            await wait_until(lambda: session.connection_status is ConnectionSignal.POLLING)

            fetcher.jobs = [make_job(status="completed")]
            await wait_until(lambda: session.connection_status is ConnectionSignal.DEGRADED)
            assert session.store.get("job-1").status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_listeners_notified(self, fetcher, control, clock, tracker_config):
        client = FakeRealtimeClient(script=[SUBSCRIBED])
        calls: list[int] = []
        session = _session(fetcher, control, clock, tracker_config, client)
        sub_id = session.subscribe(lambda: calls.append(1))

        async with session:
            await wait_until(lambda: session.connection_status is ConnectionSignal.CONNECTED)
            before = len(calls)
            client.last.emit_event(upsert_event(make_job()))
            assert len(calls) == before + 1

            assert session.unsubscribe(sub_id) is True
            client.last.emit_event(upsert_event(make_job(progress_percentage=20)))
            assert len(calls) == before + 1

    @pytest.mark.asyncio
    async def test_fetch_banner_after_repeated_poll_failures(
        self, fetcher, control, clock, tracker_config
    ):
        fetcher.jobs = [make_job()]
        notifications: list[NotificationContext] = []

        def events() -> list[NotificationEvent]:
            return [ctx.event for ctx in notifications]

        async with _session(fetcher, control, clock, tracker_config) as session:
            session.subscribe_notifications(notifications.append)
            fetcher.fail_times = 2
            await wait_until(lambda: NotificationEvent.FETCH_RESTORED in events())
            assert events() == [
                NotificationEvent.FETCH_DEGRADED,
                NotificationEvent.FETCH_RESTORED,
            ]
            assert session.banners == frozenset()

            fetcher.error = FetchError("job list request failed: HTTP 502")
            await wait_until(lambda: NotificationEvent.FETCH_DEGRADED in session.banners)
            assert session.dismiss_banner(NotificationEvent.FETCH_DEGRADED) is True
            assert session.banners == frozenset()
            fetcher.error = None


class TestRecovery:
    """Tests for recovery requests through the session."""

    @pytest.mark.asyncio
    async def test_rapid_double_restart_sends_one_request(
        self, fetcher, control, clock, tracker_config
    ):
        fetcher.jobs = [make_job(age=timedelta(minutes=15))]
        control.gate = asyncio.Event()
        notifications: list[NotificationContext] = []

        async with _session(fetcher, control, clock, tracker_config) as session:
            session.subscribe_notifications(notifications.append)
            assert session.entry("job-1").health_status is HealthStatus.STUCK

            first = asyncio.create_task(session.request_recovery("job-1", "restart"))
            await wait_until(lambda: bool(session.dispatcher.in_flight))
            second = await session.request_recovery("job-1", RecoveryAction.RESTART)

            control.gate.set()
            outcome = await first

        assert outcome.accepted
        assert not second.accepted
        assert second.in_progress
        assert control.calls == [("restart", "job-1")]
        assert [ctx.event for ctx in notifications] == [NotificationEvent.RECOVERY_IN_PROGRESS]

    @pytest.mark.asyncio
    async def test_rejected_recovery_keeps_classification(
        self, fetcher, control, clock, tracker_config
    ):
        fetcher.jobs = [make_job(age=timedelta(minutes=15))]
        control.results["restart"] = ControlResult(success=False, error="Job is locked")
        notifications: list[NotificationContext] = []

        async with _session(fetcher, control, clock, tracker_config) as session:
            session.subscribe_notifications(notifications.append)
            outcome = await session.request_recovery("job-1", "restart")
            assert session.entry("job-1").health_status is HealthStatus.STUCK

        assert not outcome.accepted
        assert outcome.error == "Job is locked"
        assert not outcome.in_progress
        assert notifications[0].event is NotificationEvent.RECOVERY_FAILED
        assert notifications[0].error_message == "Job is locked"

    @pytest.mark.asyncio
    async def test_resume_healthy_job_rejected(self, fetcher, control, clock, tracker_config):
        fetcher.jobs = [make_job()]
        async with _session(fetcher, control, clock, tracker_config) as session:
            outcome = await session.request_recovery("job-1", "resume")
        assert not outcome.accepted
        assert control.calls == []

    @pytest.mark.asyncio
    async def test_dismiss(self, fetcher, control, clock, tracker_config):
        fetcher.jobs = [make_job(status="completed", age=timedelta(hours=1))]
        async with _session(fetcher, control, clock, tracker_config) as session:
            outcome = await session.dismiss("job-1")
            assert outcome.accepted
            assert outcome.action == "clear"
            assert session.entries() == []

    @pytest.mark.asyncio
    async def test_delete(self, fetcher, control, clock, tracker_config):
        fetcher.jobs = [make_job(status="failed")]
        async with _session(fetcher, control, clock, tracker_config) as session:
            outcome = await session.request_recovery("job-1", "delete")
            assert outcome.accepted
            assert session.store.get("job-1") is None


class TestRefresh:
    """Tests for on-demand refresh."""

    @pytest.mark.asyncio
    async def test_refresh_without_start(self, fetcher, control, clock, tracker_config):
        fetcher.jobs = [make_job(status="completed")]
        session = _session(fetcher, control, clock, tracker_config)
        assert await session.refresh() is True
        assert session.store.get("job-1") is not None
        assert session.connection_status is ConnectionSignal.DEGRADED
        await session.close()

    @pytest.mark.asyncio
    async def test_refresh_starts_poller_for_active_jobs(
        self, fetcher, control, clock, tracker_config
    ):
        fetcher.jobs = [make_job()]
        session = _session(fetcher, control, clock, tracker_config)
        assert await session.refresh() is True
        assert session.connection_status is ConnectionSignal.POLLING
        await session.close()
        assert session.connection_status is ConnectionSignal.DEGRADED

    @pytest.mark.asyncio
    async def test_refresh_failure(self, fetcher, control, clock, tracker_config):
        fetcher.fail_times = 1
        session = _session(fetcher, control, clock, tracker_config)
        assert await session.refresh() is False
        await session.close()


def test_default_markers_follow_config(tmp_path, fetcher, control):
    path = tmp_path / "notified.json"
    config = TrackerConfig.model_validate({"notifications": {"marker_file": str(path)}})
    session = TrackingSession(OWNER, fetcher=fetcher, control=control, config=config)
    markers = session._aggregator._markers
    assert isinstance(markers, JsonMarkerStore)
    assert markers.path == path
    assert markers.owner_id == OWNER

    in_memory = TrackingSession(
        OWNER,
        fetcher=fetcher,
        control=control,
        config=TrackerConfig.model_validate({"notifications": {"marker_file": None}}),
    )
    assert isinstance(in_memory._aggregator._markers, MemoryMarkerStore)

"""Tests for genwatch.tracking.recovery."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from genwatch.tracking.exceptions import (
    RecoveryDispatchError,
    RecoveryInProgressError,
    RecoveryNotAllowedError,
)
from genwatch.tracking.health import RecoveryAction, project
from genwatch.tracking.recovery import ControlResult, RecoveryDispatcher
from tests.helpers import NOW, make_job, wait_until

STUCK = timedelta(minutes=15)
STALLED = timedelta(minutes=7)


@pytest.fixture
def dispatcher(control, store, clock) -> RecoveryDispatcher:
    return RecoveryDispatcher(control, store, clock=clock)


class TestDispatch:
    """Tests for sending recovery commands."""

    @pytest.mark.asyncio
    async def test_restart_stuck_job(self, dispatcher, control, store):
        store.upsert(make_job(age=STUCK))
        result = await dispatcher.dispatch("job-1", RecoveryAction.RESTART)
        assert result.success
        assert control.calls == [("restart", "job-1")]

    @pytest.mark.asyncio
    async def test_accepts_action_name(self, dispatcher, control, store):
        store.upsert(make_job(age=STALLED))
        await dispatcher.dispatch("job-1", "resume")
        assert control.calls == [("resume", "job-1")]

    @pytest.mark.asyncio
    async def test_status_not_changed_optimistically(self, dispatcher, store):
        job = make_job(age=STUCK)
        store.upsert(job)
        await dispatcher.dispatch("job-1", "restart")
        assert store.get("job-1") == job

    @pytest.mark.asyncio
    async def test_resume_healthy_job_rejected(self, dispatcher, control, store):
        store.upsert(make_job())
        with pytest.raises(RecoveryNotAllowedError, match="does not need attention"):
            await dispatcher.dispatch("job-1", "resume")
        assert control.calls == []

    @pytest.mark.asyncio
    async def test_restart_untracked_job_rejected(self, dispatcher, control):
        with pytest.raises(RecoveryNotAllowedError, match="not tracked"):
            await dispatcher.dispatch("ghost", "restart")
        assert control.calls == []

    @pytest.mark.asyncio
    async def test_restart_failed_job(self, dispatcher, control, store):
        store.upsert(make_job(status="failed"))
        await dispatcher.dispatch("job-1", "restart")
        assert control.calls == [("restart", "job-1")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["delete_and_retry", "none", "explode"])
    async def test_non_dispatchable_actions(self, dispatcher, control, store, action):
        store.upsert(make_job(age=STUCK))
        with pytest.raises(RecoveryNotAllowedError) as exc_info:
            await dispatcher.dispatch("job-1", action)
        assert exc_info.value.action == action
        assert control.calls == []

    @pytest.mark.asyncio
    async def test_delete_removes_job(self, dispatcher, control, store):
        store.upsert(make_job())
        await dispatcher.dispatch("job-1", "delete")
        assert control.calls == [("delete", "job-1")]
        assert store.get("job-1") is None

    @pytest.mark.asyncio
    async def test_backend_rejection(self, dispatcher, control, store):
        store.upsert(make_job(age=STUCK))
        control.results["restart"] = ControlResult(success=False, error="Job is locked")
        with pytest.raises(RecoveryDispatchError, match="Job is locked") as exc_info:
            await dispatcher.dispatch("job-1", "restart")
        assert exc_info.value.job_id == "job-1"
        assert dispatcher.in_flight == frozenset()

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_job(self, dispatcher, control, store):
        store.upsert(make_job())
        control.results["delete"] = ControlResult(success=False, error="nope")
        with pytest.raises(RecoveryDispatchError):
            await dispatcher.dispatch("job-1", "delete")
        assert "job-1" in store

    @pytest.mark.asyncio
    async def test_transport_exception_wrapped(self, dispatcher, control, store):
        store.upsert(make_job(age=STUCK))
        control.error = OSError("network unreachable")
        with pytest.raises(RecoveryDispatchError, match="network unreachable"):
            await dispatcher.dispatch("job-1", "restart")
        assert dispatcher.in_flight == frozenset()

    @pytest.mark.asyncio
    async def test_retry_allowed_after_failure(self, dispatcher, control, store):
        store.upsert(make_job(age=STUCK))
        control.error = OSError("down")
        with pytest.raises(RecoveryDispatchError):
            await dispatcher.dispatch("job-1", "restart")
        control.error = None
        await dispatcher.dispatch("job-1", "restart")
        assert len(control.calls) == 2


class TestSingleFire:
    """Tests for at-most-one in-flight request per job and action."""

    @pytest.mark.asyncio
    async def test_duplicate_rejected_while_in_flight(self, dispatcher, control, store):
        store.upsert(make_job(age=STUCK))
        control.gate = asyncio.Event()

        first = asyncio.create_task(dispatcher.dispatch("job-1", "restart"))
        await wait_until(lambda: bool(dispatcher.in_flight))
        assert dispatcher.in_flight == {("job-1", "restart")}

        with pytest.raises(RecoveryInProgressError):
            await dispatcher.dispatch("job-1", "restart")

        control.gate.set()
        assert (await first).success
        assert control.calls == [("restart", "job-1")]
        assert dispatcher.in_flight == frozenset()

    @pytest.mark.asyncio
    async def test_other_action_not_blocked(self, dispatcher, control, store):
        store.upsert(make_job(age=STUCK))
        control.gate = asyncio.Event()

        restart = asyncio.create_task(dispatcher.dispatch("job-1", "restart"))
        await wait_until(lambda: bool(dispatcher.in_flight))
        delete = asyncio.create_task(dispatcher.dispatch("job-1", "delete"))
        await wait_until(lambda: len(control.calls) == 2)

        control.gate.set()
        await asyncio.gather(restart, delete)
        assert sorted(control.calls) == [("delete", "job-1"), ("restart", "job-1")]


class TestDismiss:
    """Tests for clearing jobs."""

    @pytest.mark.asyncio
    async def test_dismiss_marks_cleared(self, dispatcher, control, store):
        store.upsert(make_job(status="completed"))
        await dispatcher.dismiss("job-1")
        assert control.calls == [("clear", "job-1")]
        assert store.get("job-1").is_cleared
        assert store.list() == []

    @pytest.mark.asyncio
    async def test_rejected_dismiss_keeps_job_visible(self, dispatcher, control, store):
        store.upsert(make_job(status="completed"))
        control.results["clear"] = ControlResult(success=False, error="forbidden")
        with pytest.raises(RecoveryDispatchError):
            await dispatcher.dismiss("job-1")
        assert not store.get("job-1").is_cleared


class TestAvailableActions:
    """Tests for the actions offered per job."""

    def test_needs_attention(self, dispatcher):
        view = project(make_job(age=STALLED), NOW)
        assert dispatcher.available_actions(view) == [
            RecoveryAction.RESUME,
            RecoveryAction.RESTART,
            RecoveryAction.DELETE,
        ]

    def test_healthy_only_delete(self, dispatcher):
        view = project(make_job(), NOW)
        assert dispatcher.available_actions(view) == [RecoveryAction.DELETE]

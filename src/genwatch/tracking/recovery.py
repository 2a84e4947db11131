"""Recovery dispatcher.

Forwards user-initiated recovery commands (resume, restart, delete) and
dismissals to the backend control API. The dispatcher never changes a job's
status optimistically: the resulting transition arrives through the push
channel or the next poll. The only local writes are the removal of a job whose
deletion the backend confirmed and the cleared flag after a confirmed dismiss.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from genwatch.core.config import HealthConfig
from genwatch.core.logging import get_logger
from genwatch.tracking.exceptions import (
    RecoveryDispatchError,
    RecoveryInProgressError,
    RecoveryNotAllowedError,
)
from genwatch.tracking.health import JobView, RecoveryAction, project
from genwatch.tracking.store import JobStore
from genwatch.utils.time import Clock, utc_now

_logger = get_logger("tracking.recovery")

DISPATCHABLE_ACTIONS = frozenset(
    {RecoveryAction.RESUME, RecoveryAction.RESTART, RecoveryAction.DELETE}
)

_CLEAR = "clear"


@dataclass(frozen=True)
class ControlResult:
    """Answer of the control API to one command."""

    success: bool
    error: str | None = None


class ControlApi(Protocol):
    """Backend endpoints acting on a single job."""

    async def resume(self, job_id: str) -> ControlResult: ...

    async def restart(self, job_id: str) -> ControlResult: ...

    async def delete(self, job_id: str) -> ControlResult: ...

    async def clear(self, job_id: str) -> ControlResult: ...


class RecoveryDispatcher:
    """Sends recovery commands, at most one per (job, action) at a time."""

    def __init__(
        self,
        control: ControlApi,
        store: JobStore,
        *,
        health: HealthConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._control = control
        self._store = store
        self._health = health or HealthConfig()
        self._clock = clock
        self._in_flight: set[tuple[str, str]] = set()

    @property
    def in_flight(self) -> frozenset[tuple[str, str]]:
        """(job_id, action) pairs with a request currently outstanding."""
        return frozenset(self._in_flight)

    async def dispatch(self, job_id: str, action: RecoveryAction | str) -> ControlResult:
        """Send one recovery command for a job.

        Raises:
            RecoveryInProgressError: The same action is already in flight.
            RecoveryNotAllowedError: Resume/restart on a job that does not
                need attention, or an action that cannot be dispatched.
            RecoveryDispatchError: The control request failed.
        """
        try:
            action = RecoveryAction(action)
        except ValueError:
            raise RecoveryNotAllowedError(
                f"unknown recovery action '{action}'", job_id=job_id, action=str(action)
            ) from None
        if action not in DISPATCHABLE_ACTIONS:
            raise RecoveryNotAllowedError(
                f"'{action.value}' is not a dispatchable recovery action",
                job_id=job_id,
                action=action.value,
            )
        self._check_not_in_flight(job_id, action.value)

        if action is not RecoveryAction.DELETE:
            job = self._store.get(job_id)
            if job is None:
                raise RecoveryNotAllowedError(
                    f"job {job_id} is not tracked", job_id=job_id, action=action.value
                )
            view = project(job, self._clock(), self._health)
            if not view.needs_attention:
                health = view.health_status.value if view.health_status else "none"
                raise RecoveryNotAllowedError(
                    f"job {job_id} does not need attention (health: {health})",
                    job_id=job_id,
                    action=action.value,
                )

        result = await self._send(job_id, action.value)
        if action is RecoveryAction.DELETE:
            self._store.remove(job_id)
        return result

    async def dismiss(self, job_id: str) -> ControlResult:
        """Clear a job from the user's active view.

        Raises:
            RecoveryInProgressError: A dismissal for the job is in flight.
            RecoveryDispatchError: The control request failed.
        """
        self._check_not_in_flight(job_id, _CLEAR)
        result = await self._send(job_id, _CLEAR)
        self._store.mark_cleared(job_id)
        return result

    def available_actions(self, view: JobView) -> list[RecoveryAction]:
        """Actions the UI may offer for a projected job."""
        if view.needs_attention:
            return [RecoveryAction.RESUME, RecoveryAction.RESTART, RecoveryAction.DELETE]
        return [RecoveryAction.DELETE]

    def _check_not_in_flight(self, job_id: str, action: str) -> None:
        if (job_id, action) in self._in_flight:
            _logger.info("recovery.duplicate_rejected", job_id=job_id, action=action)
            raise RecoveryInProgressError(
                f"{action} already in progress for job {job_id}",
                job_id=job_id,
                action=action,
            )

    async def _send(self, job_id: str, action: str) -> ControlResult:
        key = (job_id, action)
        self._in_flight.add(key)
        _logger.info("recovery.dispatching", job_id=job_id, action=action)
        try:
            result = await getattr(self._control, action)(job_id)
        except Exception as e:
            _logger.warning("recovery.request_error", job_id=job_id, action=action, error=str(e))
            raise RecoveryDispatchError(
                f"{action} request for job {job_id} failed: {e}",
                job_id=job_id,
                action=action,
            ) from e
        finally:
            self._in_flight.discard(key)

        if not result.success:
            _logger.warning(
                "recovery.rejected", job_id=job_id, action=action, error=result.error
            )
            raise RecoveryDispatchError(
                result.error or f"{action} request for job {job_id} was rejected",
                job_id=job_id,
                action=action,
            )

        _logger.info("recovery.dispatched", job_id=job_id, action=action)
        return result


__all__ = [
    "DISPATCHABLE_ACTIONS",
    "ControlApi",
    "ControlResult",
    "RecoveryDispatcher",
]

"""genwatch CLI commands: watch, jobs, recover, dismiss."""

from __future__ import annotations

import asyncio
import json
from enum import Enum

import typer
from rich.console import Group
from rich.live import Live

from genwatch.tracking.exceptions import FetchError
from genwatch.tracking.health import project
from genwatch.tracking.notifications import NotificationContext
from genwatch.tracking.session import RecoveryOutcome
from genwatch.utils.time import utc_now

from .helpers import ErrorMessages, create_api, create_session, load_config
from .output import console, output_error, render_jobs_table, render_watch_view, view_to_dict


class RecoverAction(str, Enum):
    RESUME = "resume"
    RESTART = "restart"
    DELETE = "delete"


_BASE_URL_HELP = "Application base URL (overrides the config file)"


# =============================================================================
# watch
# =============================================================================


def watch(
    owner_id: str = typer.Argument(..., help="User whose jobs to follow"),
    base_url: str | None = typer.Option(None, "--base-url", "-u", help=_BASE_URL_HELP),
    no_realtime: bool = typer.Option(
        False, "--no-realtime", help="Poll only, without the live change stream"
    ),
    duration: float | None = typer.Option(
        None, "--duration", help="Stop after this many seconds (default: until Ctrl-C)"
    ),
) -> None:
    """Follow an owner's generation jobs live until interrupted."""
    try:
        asyncio.run(_watch(owner_id, base_url, not no_realtime, duration))
    except KeyboardInterrupt:
        console.print("[dim]Stopped watching.[/dim]")


async def _watch(
    owner_id: str, base_url: str | None, realtime: bool, duration: float | None
) -> None:
    config = load_config(console, base_url)
    api = create_api(config)
    session, client = create_session(owner_id, config, api, realtime=realtime)
    changed = asyncio.Event()
    notif_sub = session.subscribe_notifications(lambda ctx: changed.set())

    def render() -> Group:
        notifications: list[NotificationContext] = session.recent_notifications(notif_sub)
        return render_watch_view(
            session.entries(),
            utc_now(),
            session.connection_status,
            session.banners,
            notifications,
        )

    loop = asyncio.get_running_loop()
    deadline = loop.time() + duration if duration is not None else None
    try:
        async with session:
            session.subscribe(changed.set)
            with Live(render(), console=console, refresh_per_second=4) as live:
                while deadline is None or loop.time() < deadline:
                    try:
                        # Redraw at least once a second so ages keep ticking
                        await asyncio.wait_for(changed.wait(), timeout=1.0)
                    except TimeoutError:
                        pass
                    changed.clear()
                    live.update(render())
    finally:
        await api.aclose()
        if client is not None:
            await client.aclose()


# =============================================================================
# jobs
# =============================================================================


def jobs(
    owner_id: str = typer.Argument(..., help="User whose jobs to list"),
    base_url: str | None = typer.Option(None, "--base-url", "-u", help=_BASE_URL_HELP),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List an owner's jobs with their health and recommended action."""
    asyncio.run(_jobs(owner_id, base_url, json_output))


async def _jobs(owner_id: str, base_url: str | None, json_output: bool) -> None:
    config = load_config(console, base_url)
    api = create_api(config)
    try:
        fetched = await api.fetch_jobs(owner_id)
    except FetchError as e:
        output_error(f"{ErrorMessages.FETCH_FAILED}: {e}", json_output=json_output)
        raise typer.Exit(1) from None
    finally:
        await api.aclose()

    now = utc_now()
    views = [
        project(job, now, config.health)
        for job in fetched
        if job.owner_id == owner_id and not job.is_cleared
    ]
    if json_output:
        console.print(
            json.dumps([view_to_dict(v) for v in views], indent=2),
            markup=False,
            highlight=False,
            soft_wrap=True,
        )
        return
    console.print(render_jobs_table(views, now, title=f"Generation Jobs of {owner_id}"))


# =============================================================================
# recover / dismiss
# =============================================================================


def recover(
    owner_id: str = typer.Argument(..., help="Owner of the job"),
    job_id: str = typer.Argument(..., help="Job to recover"),
    action: RecoverAction = typer.Argument(..., help="resume, restart or delete"),
    base_url: str | None = typer.Option(None, "--base-url", "-u", help=_BASE_URL_HELP),
) -> None:
    """Resume, restart or delete a job that needs attention."""
    outcome = asyncio.run(_run_control(owner_id, job_id, action.value, base_url))
    _report(outcome, f"{action.value} requested for job {job_id}")


def dismiss(
    owner_id: str = typer.Argument(..., help="Owner of the job"),
    job_id: str = typer.Argument(..., help="Job to clear from the active list"),
    base_url: str | None = typer.Option(None, "--base-url", "-u", help=_BASE_URL_HELP),
) -> None:
    """Clear a finished job from the active list."""
    outcome = asyncio.run(_run_control(owner_id, job_id, "clear", base_url))
    _report(outcome, f"Job {job_id} dismissed")


async def _run_control(
    owner_id: str, job_id: str, action: str, base_url: str | None
) -> RecoveryOutcome:
    config = load_config(console, base_url)
    api = create_api(config)
    session, _ = create_session(owner_id, config, api, realtime=False)
    try:
        if not await session.refresh():
            output_error(ErrorMessages.FETCH_FAILED)
            raise typer.Exit(1)
        if session.store.get(job_id) is None:
            output_error(
                f"{ErrorMessages.JOB_NOT_FOUND}: {job_id}",
                hints=[f"Run 'genwatch jobs {owner_id}' to list the owner's jobs."],
            )
            raise typer.Exit(1)
        if action == "clear":
            return await session.dismiss(job_id)
        return await session.request_recovery(job_id, action)
    finally:
        await session.close()
        await api.aclose()


def _report(outcome: RecoveryOutcome, success_message: str) -> None:
    if outcome.accepted:
        console.print(f"[green]{success_message}[/green]")
        return
    if outcome.in_progress:
        output_error(outcome.error or "already in progress", severity="warning")
    else:
        output_error(outcome.error or "request failed")
    raise typer.Exit(1)


__all__ = ["RecoverAction", "dismiss", "jobs", "recover", "watch"]

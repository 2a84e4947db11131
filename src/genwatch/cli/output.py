"""Rich output formatting for the genwatch CLI.

Colour schemes, the job table and small formatters shared by the commands.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any, Literal

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from genwatch.core.job import JobStatus
from genwatch.tracking.health import HealthStatus, JobView
from genwatch.tracking.notifications import NotificationContext, NotificationEvent
from genwatch.tracking.session import ConnectionSignal
from genwatch.utils.time import format_age

console = Console()


class StatusColors:
    """Colour mappings for status values."""

    JOB_STATUS: dict[JobStatus, str] = {
        JobStatus.QUEUED: "yellow",
        JobStatus.PROCESSING: "blue",
        JobStatus.COMPLETED: "green",
        JobStatus.FAILED: "red",
        JobStatus.CANCELLED: "dim",
    }

    HEALTH_STATUS: dict[HealthStatus, str] = {
        HealthStatus.HEALTHY: "green",
        HealthStatus.STALLED: "yellow",
        HealthStatus.STUCK: "red",
        HealthStatus.FAILED: "red",
        HealthStatus.ABANDONED: "magenta",
    }

    CONNECTION: dict[ConnectionSignal, str] = {
        ConnectionSignal.CONNECTED: "green",
        ConnectionSignal.POLLING: "yellow",
        ConnectionSignal.DEGRADED: "red",
    }

    NOTIFICATION: dict[NotificationEvent, str] = {
        NotificationEvent.JOB_COMPLETE: "green",
        NotificationEvent.JOB_PARTIAL: "yellow",
        NotificationEvent.JOB_FAILED: "red",
        NotificationEvent.CONNECTION_DEGRADED: "yellow",
        NotificationEvent.CONNECTION_RESTORED: "green",
        NotificationEvent.FETCH_DEGRADED: "red",
        NotificationEvent.FETCH_RESTORED: "green",
        NotificationEvent.RECOVERY_FAILED: "red",
        NotificationEvent.RECOVERY_IN_PROGRESS: "yellow",
    }

    @classmethod
    def get_job_color(cls, status: JobStatus) -> str:
        return cls.JOB_STATUS.get(status, "white")

    @classmethod
    def get_health_color(cls, health: HealthStatus | None) -> str:
        if health is None:
            return "dim"
        return cls.HEALTH_STATUS.get(health, "white")


def format_success_rate(rate: float | None) -> str:
    return "-" if rate is None else f"{rate:.0%}"


def format_tasks(view: JobView) -> str:
    """``completed/total`` with a failed count, or ``-`` without counters."""
    job = view.job
    if job.total_tasks is None:
        return "-"
    text = f"{job.completed_tasks or 0}/{job.total_tasks}"
    if job.failed_tasks:
        text += f" ({job.failed_tasks} failed)"
    return text


def create_jobs_table(title: str = "Generation Jobs") -> Table:
    table = Table(title=title)
    table.add_column("Job ID", style="cyan", no_wrap=True)
    table.add_column("Status", style="bold")
    table.add_column("Health")
    table.add_column("Progress", justify="right")
    table.add_column("Tasks", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Phase", style="dim")
    table.add_column("Updated", style="dim", justify="right")
    table.add_column("Action")
    return table


def render_jobs_table(views: Sequence[JobView], now: datetime, title: str | None = None) -> Table:
    """Build the job table for a list of projections."""
    table = create_jobs_table(title or "Generation Jobs")
    for view in views:
        status = view.effective_status
        status_text = Text(status.value, style=StatusColors.get_job_color(status))
        if status is not view.job.status:
            status_text.append(f" (reported {view.job.status.value})", style="dim")

        health = view.health_status
        health_text = Text(
            health.value if health is not None else "-",
            style=StatusColors.get_health_color(health),
        )
        action = view.recommended_action.value
        table.add_row(
            view.job.id,
            status_text,
            health_text,
            f"{view.display_progress}%",
            format_tasks(view),
            format_success_rate(view.success_rate),
            view.job.current_phase or "",
            f"{format_age(view.job.updated_at, now)} ago",
            "" if action == "none" else action,
        )
    if not views:
        table.caption = "No active jobs"
    return table


def format_connection(signal: ConnectionSignal) -> Text:
    colour = StatusColors.CONNECTION.get(signal, "white")
    return Text.assemble(("Connection: ", "bold"), (signal.value, colour))


def format_notification(ctx: NotificationContext) -> Text:
    colour = StatusColors.NOTIFICATION.get(ctx.event, "white")
    return Text.assemble(
        (ctx.timestamp.strftime("%H:%M:%S"), "dim"),
        " ",
        (ctx.format_title(), f"bold {colour}"),
        " ",
        (ctx.format_message(), "dim"),
    )


def render_watch_view(
    views: Sequence[JobView],
    now: datetime,
    signal: ConnectionSignal,
    banners: Iterable[NotificationEvent],
    notifications: Sequence[NotificationContext],
) -> Group:
    """Full live view: connection line, banners, job table, recent notifications."""
    parts: list[Any] = [format_connection(signal)]
    for banner in sorted(banners, key=lambda b: b.value):
        parts.append(
            Panel(
                NotificationContext(event=banner).format_title(),
                border_style=StatusColors.NOTIFICATION.get(banner, "yellow"),
            )
        )
    parts.append(render_jobs_table(views, now))
    for ctx in notifications[-5:]:
        parts.append(format_notification(ctx))
    return Group(*parts)


def view_to_dict(view: JobView) -> dict[str, Any]:
    """JSON-ready representation of a projection."""
    return {
        "job": view.job.model_dump(mode="json"),
        "health_status": view.health_status.value if view.health_status else None,
        "effective_status": view.effective_status.value,
        "success_rate": view.success_rate,
        "effectively_complete": view.effectively_complete,
        "recommended_action": view.recommended_action.value,
        "display_progress": view.display_progress,
    }


def output_error(
    message: str,
    *,
    hints: list[str] | None = None,
    severity: Literal["error", "warning"] = "error",
    json_output: bool = False,
    console_instance: Console | None = None,
) -> None:
    """Print an error or warning, as Rich markup or as a JSON object."""
    out = console_instance or console
    if json_output:
        result: dict[str, Any] = {"success": False, "message": message}
        if hints:
            result["hints"] = hints
        out.print(json.dumps(result, indent=2), markup=False, highlight=False, soft_wrap=True)
        return

    color = "red" if severity == "error" else "yellow"
    label = "Error" if severity == "error" else "Warning"
    out.print(f"[{color}]{label}:[/{color}] {escape(message)}")
    if hints:
        out.print()
        out.print("[dim]Hints:[/dim]")
        for hint in hints:
            out.print(f"  - {escape(hint)}")


__all__ = [
    "StatusColors",
    "console",
    "create_jobs_table",
    "format_connection",
    "format_notification",
    "format_success_rate",
    "format_tasks",
    "output_error",
    "render_jobs_table",
    "render_watch_view",
    "view_to_dict",
]

"""genwatch CLI.

Package structure:
    cli/
    ├── __init__.py   # app assembly and global options
    ├── helpers.py    # logging/config state, session factories
    ├── output.py     # Rich formatting
    └── commands.py   # watch, jobs, recover, dismiss
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from genwatch import __version__

from .commands import dismiss, jobs, recover, watch
from .helpers import (
    configure_global_logging,
    set_config_path,
    set_log_file,
    set_log_format,
    set_log_level,
)
from .output import console

app = typer.Typer(
    name="genwatch",
    help="Track course-generation jobs: health, recovery and notifications",
    add_completion=False,
)


# =============================================================================
# Global option callbacks
# =============================================================================


def version_callback(value: bool) -> None:
    if value:
        console.print(f"genwatch v{__version__}")
        raise typer.Exit()


def log_level_callback(value: str | None) -> str | None:
    if value:
        set_log_level(value)
    return value


def log_file_callback(value: Path | None) -> Path | None:
    if value:
        set_log_file(value)
    return value


def log_format_callback(value: str | None) -> str | None:
    if value:
        set_log_format(value)
    return value


def config_callback(value: Path | None) -> Path | None:
    set_config_path(value)
    return value


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            callback=config_callback,
            help="Tracker config file (YAML)",
            envvar="GENWATCH_CONFIG",
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            "-L",
            callback=log_level_callback,
            help="Logging level (DEBUG, INFO, WARNING, ERROR)",
            envvar="GENWATCH_LOG_LEVEL",
        ),
    ] = None,
    log_file: Annotated[
        Path | None,
        typer.Option(
            "--log-file",
            callback=log_file_callback,
            help="Write structured JSON logs to this file",
            envvar="GENWATCH_LOG_FILE",
        ),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option(
            "--log-format",
            callback=log_format_callback,
            help="Log format: json, console, or both",
            envvar="GENWATCH_LOG_FORMAT",
        ),
    ] = None,
) -> None:
    """genwatch - follow AI course-generation jobs and recover the ones that stall."""
    configure_global_logging(console)


app.command()(watch)
app.command()(jobs)
app.command()(recover)
app.command()(dismiss)


__all__ = ["app", "console", "main"]

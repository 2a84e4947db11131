"""Shared state and factories for genwatch CLI commands.

Global options (log level/format/file, config file) are collected by the
Typer callbacks into module-level state, then applied once before a command
runs.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from genwatch.backends import HttpJobsApi, SSERealtimeClient
from genwatch.core.config import TrackerConfig
from genwatch.core.logging import configure_logging, get_logger
from genwatch.tracking.session import TrackingSession

_logger = get_logger("cli")

DEFAULT_CONFIG_PATH = Path("~/.genwatch/config.yaml")


class ErrorMessages:
    """User-facing error strings."""

    CONFIG_LOAD_ERROR = "Error loading config"
    JOB_NOT_FOUND = "Job not found"
    FETCH_FAILED = "Could not load jobs"


# =============================================================================
# Logging configuration
# =============================================================================


@dataclass
class CliLoggingConfig:
    """Logging options collected from the global CLI flags."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"
    file: Path | None = None
    format: Literal["json", "console", "both"] = "console"
    configured: bool = False


_log_config = CliLoggingConfig()
_config_path: Path | None = None


def set_log_level(level: str) -> None:
    _log_config.level = level.upper()  # type: ignore[assignment]


def set_log_file(path: Path | None) -> None:
    """Send structured logs to a file instead of the terminal."""
    _log_config.file = path
    if path and _log_config.format == "console":
        _log_config.format = "json"


def set_log_format(fmt: str) -> None:
    _log_config.format = fmt  # type: ignore[assignment]


def get_log_config() -> CliLoggingConfig:
    return _log_config


def configure_global_logging(console: Console) -> None:
    """Apply the collected logging options. Only configures once.

    Raises:
        typer.Exit: If the combination of options is invalid.
    """
    if _log_config.configured:
        return
    try:
        configure_logging(
            level=_log_config.level,
            format=_log_config.format,
            file_path=_log_config.file,
        )
        _log_config.configured = True
    except ValueError as e:
        console.print(f"[red]Logging configuration error:[/red] {e}")
        raise typer.Exit(1) from None


def reset_cli_state() -> None:
    """Reset module-level CLI state (used by tests)."""
    global _log_config, _config_path
    _log_config = CliLoggingConfig()
    _config_path = None


# =============================================================================
# Configuration and session factories
# =============================================================================


def set_config_path(path: Path | None) -> None:
    global _config_path
    _config_path = path


def load_config(console: Console, base_url: str | None = None) -> TrackerConfig:
    """Load the tracker config from ``--config`` or the default location.

    A missing default file yields the built-in defaults; a missing explicit
    file or invalid content exits with code 1.
    """
    path = _config_path
    try:
        if path is not None:
            config = TrackerConfig.from_yaml(path.expanduser())
        elif DEFAULT_CONFIG_PATH.expanduser().exists():
            config = TrackerConfig.from_yaml(DEFAULT_CONFIG_PATH.expanduser())
        else:
            config = TrackerConfig()
    except FileNotFoundError:
        console.print(f"[red]{ErrorMessages.CONFIG_LOAD_ERROR}:[/red] {path} not found")
        raise typer.Exit(1) from None
    except (ValidationError, ValueError) as e:
        console.print(f"[red]{ErrorMessages.CONFIG_LOAD_ERROR}:[/red] {escape(str(e))}")
        raise typer.Exit(1) from None

    if base_url:
        config = config.model_copy(
            update={"api": config.api.model_copy(update={"base_url": base_url})}
        )
    _logger.debug("cli.config_loaded", path=str(path) if path else None)
    return config


def create_api(config: TrackerConfig) -> HttpJobsApi:
    return HttpJobsApi(config.api)


def create_session(
    owner_id: str,
    config: TrackerConfig,
    api: HttpJobsApi,
    *,
    realtime: bool = True,
) -> tuple[TrackingSession, SSERealtimeClient | None]:
    """Build a tracking session over the bundled HTTP and SSE backends."""
    client = SSERealtimeClient(config.api) if realtime else None
    session = TrackingSession(
        owner_id,
        fetcher=api,
        control=api,
        realtime=client,
        config=config,
    )
    return session, client


__all__ = [
    "CliLoggingConfig",
    "ErrorMessages",
    "configure_global_logging",
    "create_api",
    "create_session",
    "load_config",
    "reset_cli_state",
    "set_config_path",
    "set_log_file",
    "set_log_format",
    "set_log_level",
]

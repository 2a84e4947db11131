"""Structured logging infrastructure for genwatch.

Provides structured logging using structlog with tracking-specific context
such as owner_id and session_id. Supports console and JSON output, with an
optional rotating log file.

Example usage:
    from genwatch.core.logging import get_logger, configure_logging, with_context

    # Configure once at startup
    configure_logging(level="DEBUG", format="console")

    # Get a component-specific logger
    logger = get_logger("tracking.store")

    # Log with auto-context
    logger.info("store.job_upserted", job_id="j-1")

    # Bind context for a scope
    job_logger = logger.bind(job_id="j-1")
    job_logger.debug("store.stale_write_ignored")

    # Use a tracking context for automatic correlation
    ctx = TrackingContext(owner_id="user-42")
    with with_context(ctx):
        logger.info("session.started")  # Includes owner_id, session_id
"""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Field name fragments whose values are never written to the log
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "credential",
    "bearer",
    "authorization",
    "cookie",
})

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]
LogFormat = Literal["json", "console", "both"]


@dataclass(frozen=True)
class TrackingContext:
    """Immutable context correlating log entries of one tracking session.

    Attributes:
        owner_id: The user whose jobs are being tracked.
        session_id: Unique id of the tracking session (one per ``TrackingSession``).
        component: Component name for the current operation.
    """

    owner_id: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    component: str | None = None

    def with_component(self, component: str) -> TrackingContext:
        """Return a copy of this context bound to another component."""
        return TrackingContext(
            owner_id=self.owner_id,
            session_id=self.session_id,
            component=component,
        )

    def to_dict(self) -> dict[str, Any]:
        """Context fields for log entries (None values omitted)."""
        result: dict[str, Any] = {
            "owner_id": self.owner_id,
            "session_id": self.session_id,
        }
        if self.component is not None:
            result["component"] = self.component
        return result


# ContextVar keeps concurrent sessions on one event loop isolated
_current_context: ContextVar[TrackingContext | None] = ContextVar(
    "genwatch_context", default=None
)


def get_current_context() -> TrackingContext | None:
    """Get the current TrackingContext, or None outside a context block."""
    return _current_context.get()


def set_context(ctx: TrackingContext) -> None:
    """Set the current TrackingContext.

    Generally prefer ``with_context()`` for automatic cleanup. Tasks created
    after this call inherit the context.
    """
    _current_context.set(ctx)


def clear_context() -> None:
    """Clear the current TrackingContext."""
    _current_context.set(None)


@contextmanager
def with_context(ctx: TrackingContext) -> Iterator[TrackingContext]:
    """Set a TrackingContext for the duration of a block.

    Args:
        ctx: The TrackingContext to use for the block.

    Yields:
        The TrackingContext that was set.
    """
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _sanitize_value(key: str, value: Any) -> Any:
    key_lower = key.lower()
    for pattern in SENSITIVE_PATTERNS:
        if pattern in key_lower:
            return "[REDACTED]"
    return value


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that redacts sensitive fields, one level deep."""
    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if isinstance(value, dict):
            sanitized[key] = {k: _sanitize_value(k, v) for k, v in value.items()}
        else:
            sanitized[key] = _sanitize_value(key, value)
    return sanitized


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that adds an ISO8601 UTC timestamp."""
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that merges the current TrackingContext.

    Explicitly bound fields take precedence over context fields.
    """
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            if key not in event_dict:
                event_dict[key] = value
    return event_dict


class GenwatchLogger:
    """Component logger wrapping structlog.

    The logger is bound to a component name and can carry extra context for
    a scope (e.g. job_id). The underlying structlog logger is fetched lazily on
    every call so loggers created at import time still respect a
    ``configure_logging()`` call made later.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._component = component
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    def bind(self, **context: Any) -> GenwatchLogger:
        """Return a new logger with additional bound context."""
        new_logger = GenwatchLogger.__new__(GenwatchLogger)
        new_logger._component = self._component
        new_logger._context = {**self._context, **context}
        return new_logger

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log an error with traceback; call from inside an exception handler."""
        self._get_logger().exception(event, **kw)


def _build_processors(renderer: Processor, include_timestamps: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
        _add_context,
    ]
    if include_timestamps:
        processors.append(_add_timestamp)
    processors.extend([
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ])
    return processors


def configure_logging(
    level: LogLevel = "INFO",
    format: LogFormat = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 20,
    backup_count: int = 3,
    include_timestamps: bool = True,
) -> None:
    """Configure genwatch structured logging.

    Call once at startup, before the first tracking session starts.

    Args:
        level: Minimum log level to capture.
        format: "console" for human-readable stderr output, "json" for JSON
            lines (to ``file_path`` or stdout), "both" for console on stderr
            plus JSON to ``file_path``.
        file_path: Log file path. Required when format="both".
        max_file_size_mb: File size that triggers rotation.
        backup_count: Number of rotated files to keep.
        include_timestamps: Whether to add ISO8601 timestamps.

    Raises:
        ValueError: If format="both" without a file_path.
    """
    if format == "both" and file_path is None:
        raise ValueError("file_path is required when format='both'")

    log_level = getattr(logging, level)
    handlers: list[logging.Handler] = []

    if format in ("console", "both"):
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(log_level)
        handlers.append(console_handler)

    if format in ("json", "both"):
        if file_path is not None:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                file_path,
                maxBytes=max_file_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding="utf-8",
            )
            file_handler.setLevel(log_level)
            handlers.append(file_handler)
        else:
            json_handler = logging.StreamHandler(sys.stdout)
            json_handler.setLevel(log_level)
            handlers.append(json_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        root_logger.addHandler(handler)

    renderer: Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    # cache_logger_on_first_use=False so import-time loggers pick up this config
    structlog.configure(
        processors=_build_processors(renderer, include_timestamps),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> GenwatchLogger:
    """Get a logger for a component.

    Args:
        component: Dotted component name (e.g. "tracking.poller").
        **initial_context: Additional context to bind.
    """
    return GenwatchLogger(component, **initial_context)


__all__ = [
    "GenwatchLogger",
    "SENSITIVE_PATTERNS",
    "TrackingContext",
    "clear_context",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "set_context",
    "with_context",
]

"""Configuration models for genwatch tracking sessions.

Defines Pydantic v2 models for the push channel retry policy, fallback
polling, health thresholds, the HTTP backend and notifications. The top-level
``TrackerConfig`` can be loaded from a YAML file.
"""

from __future__ import annotations

import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from genwatch.core import constants
from genwatch.core.logging import get_logger

_logger = get_logger("core.config")

_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


class RealtimeConfig(BaseModel):
    """Push channel subscription and reconnect policy."""

    enabled: bool = Field(
        default=True,
        description="Subscribe to the push channel. When False the session "
        "tracks jobs by polling only.",
    )
    max_retries: int = Field(
        default=constants.REALTIME_MAX_RETRIES,
        ge=0,
        le=20,
        description="Reconnect attempts after a channel error before the "
        "channel is declared failed and fallback polling takes over.",
    )
    backoff_base_seconds: float = Field(
        default=constants.REALTIME_BACKOFF_BASE_SECONDS,
        ge=0.0,
        description="Delay before the first reconnect; doubles per attempt.",
    )
    backoff_max_seconds: float = Field(
        default=constants.REALTIME_BACKOFF_MAX_SECONDS,
        ge=0.0,
        description="Cap on a single reconnect delay.",
    )
    subscribe_timeout_seconds: float | None = Field(
        default=constants.REALTIME_SUBSCRIBE_TIMEOUT_SECONDS,
        gt=0.0,
        description="Seconds a new channel gets to acknowledge the "
        "subscription before it is treated as timed out. None waits forever.",
    )
    recovery_interval_seconds: float | None = Field(
        default=constants.REALTIME_RECOVERY_INTERVAL_SECONDS,
        gt=0.0,
        description="Once retries are exhausted, open a fresh channel this "
        "often to find out whether push is back. None disables probing.",
    )
    channel_prefix: str = Field(
        default=constants.REALTIME_CHANNEL_PREFIX,
        min_length=1,
        description="Prefix for push channel names.",
    )
    non_retryable_reasons: list[str] = Field(
        default_factory=lambda: list(constants.REALTIME_NON_RETRYABLE_REASONS),
        description="Channel error reasons that fail the channel immediately.",
    )

    @model_validator(mode="after")
    def _check_backoff(self) -> RealtimeConfig:
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError(
                f"backoff_max_seconds ({self.backoff_max_seconds}) must not be "
                f"smaller than backoff_base_seconds ({self.backoff_base_seconds})"
            )
        return self

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (1-based)."""
        exponent = max(attempt - 1, 0)
        return min(self.backoff_base_seconds * (2 ** exponent), self.backoff_max_seconds)


class PollerConfig(BaseModel):
    """Fallback polling settings."""

    interval_seconds: float = Field(
        default=constants.POLL_INTERVAL_SECONDS,
        gt=0.0,
        description="Seconds between two pulls of the job list.",
    )
    failure_banner_threshold: int = Field(
        default=constants.POLL_FAILURE_BANNER_THRESHOLD,
        ge=1,
        description="Consecutive fetch failures before the fetch-degraded "
        "banner is raised.",
    )


class HealthConfig(BaseModel):
    """Thresholds of the health classifier."""

    stalled_after_minutes: float = Field(
        default=constants.STALLED_AFTER_MINUTES,
        gt=0.0,
        description="Minutes without an update before a processing job is stalled.",
    )
    stuck_after_minutes: float = Field(
        default=constants.STUCK_AFTER_MINUTES,
        gt=0.0,
        description="Minutes without an update before a processing job is stuck.",
    )
    abandoned_after_minutes: float | None = Field(
        default=None,
        gt=0.0,
        description="Minutes without an update before a processing job is "
        "abandoned. None disables the abandoned classification.",
    )
    completion_success_rate: float = Field(
        default=constants.COMPLETION_SUCCESS_RATE,
        ge=0.0,
        le=1.0,
        description="Success rate at which an effectively complete job counts "
        "as completed rather than failed.",
    )
    low_success_rate: float = Field(
        default=constants.LOW_SUCCESS_RATE,
        ge=0.0,
        le=1.0,
        description="Below this success rate a failed job is recommended for "
        "delete-and-retry instead of restart.",
    )

    @model_validator(mode="after")
    def _check_ordering(self) -> HealthConfig:
        if self.stuck_after_minutes <= self.stalled_after_minutes:
            raise ValueError("stuck_after_minutes must be greater than stalled_after_minutes")
        if (
            self.abandoned_after_minutes is not None
            and self.abandoned_after_minutes <= self.stuck_after_minutes
        ):
            raise ValueError("abandoned_after_minutes must be greater than stuck_after_minutes")
        return self

    @property
    def stalled_after(self) -> timedelta:
        return timedelta(minutes=self.stalled_after_minutes)

    @property
    def stuck_after(self) -> timedelta:
        return timedelta(minutes=self.stuck_after_minutes)

    @property
    def abandoned_after(self) -> timedelta | None:
        if self.abandoned_after_minutes is None:
            return None
        return timedelta(minutes=self.abandoned_after_minutes)


class ApiConfig(BaseModel):
    """HTTP backend: job list, control endpoints and the SSE change stream."""

    base_url: str = Field(
        default="http://localhost:3000",
        description="Base URL of the application exposing the job endpoints.",
    )
    jobs_path: str = Field(
        default=constants.DEFAULT_JOBS_PATH,
        description="Path of the job list; control endpoints hang below it.",
    )
    stream_path: str = Field(
        default=constants.DEFAULT_STREAM_PATH,
        description="Server-Sent Events endpoint for job changes.",
    )
    timeout_seconds: float = Field(
        default=constants.HTTP_TIMEOUT_SECONDS,
        gt=0.0,
        description="Timeout for fetch and control requests.",
    )
    stream_read_timeout_seconds: float | None = Field(
        default=60.0,
        gt=0.0,
        description="Longest silence tolerated on the change stream (the server "
        "sends heartbeats). None waits forever.",
    )
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Extra request headers. ${VAR} is expanded from the environment.",
    )

    @field_validator("jobs_path", "stream_path")
    @classmethod
    def _leading_slash(cls, v: str) -> str:
        if not v.startswith("/"):
            return "/" + v
        return v

    def expanded_headers(self) -> dict[str, str]:
        """Headers with ${VAR} references replaced from the environment."""
        expanded: dict[str, str] = {}
        for key, value in self.headers.items():
            for var_name in _ENV_VAR_PATTERN.findall(value):
                env_value = os.environ.get(var_name)
                if env_value is None:
                    _logger.warning("config.header_env_var_missing", header=key, var_name=var_name)
                    env_value = ""
                value = value.replace(f"${{{var_name}}}", env_value)
            expanded[key] = value
        return expanded


class NotificationConfig(BaseModel):
    """One-shot notification settings."""

    marker_file: Path | None = Field(
        default=Path("~/.genwatch/notified.json"),
        description="File holding the durable notified-transitions markers. "
        "None keeps markers in memory only (notifications replay after restart).",
    )
    recent_completion_minutes: float = Field(
        default=constants.RECENT_COMPLETION_MINUTES,
        ge=0.0,
        description="A job first seen already complete still celebrates if it "
        "finished within this many minutes.",
    )
    max_queue_size: int = Field(
        default=constants.EVENT_BUS_MAX_QUEUE_SIZE,
        ge=10,
        description="Events kept per notification subscriber before drop-oldest.",
    )


class TrackerConfig(BaseModel):
    """Top-level configuration of a tracking session."""

    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    poller: PollerConfig = Field(default_factory=PollerConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Minimum log level.",
    )
    log_file: Path | None = Field(
        default=None,
        description="JSON log file. None logs to stderr only.",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v

    @classmethod
    def from_yaml(cls, path: Path) -> TrackerConfig:
        """Load configuration from a YAML file.

        Raises:
            FileNotFoundError: If the file does not exist.
            pydantic.ValidationError: If the content is invalid.
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)

    @classmethod
    def from_yaml_string(cls, yaml_str: str) -> TrackerConfig:
        """Load configuration from a YAML string."""
        data = yaml.safe_load(yaml_str) or {}
        return cls.model_validate(data)


__all__ = [
    "ApiConfig",
    "HealthConfig",
    "NotificationConfig",
    "PollerConfig",
    "RealtimeConfig",
    "TrackerConfig",
]

"""Pytest fixtures for genwatch tests."""

import logging
from collections.abc import Generator

import pytest
import structlog

from genwatch.core.config import (
    NotificationConfig,
    PollerConfig,
    RealtimeConfig,
    TrackerConfig,
)
from genwatch.tracking.store import JobStore
from tests.helpers import (
    NOW,
    OWNER,
    FakeClock,
    FakeControlApi,
    FakeFetcher,
    FakeRealtimeClient,
)


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset logging state before and after each test.

    The CLI keeps its logging options in module-level state and
    ``configure_logging`` replaces the root handlers, so both are restored.
    """
    import genwatch.cli.helpers as cli_helpers

    cli_helpers.reset_cli_state()
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    original_level = root_logger.level

    yield

    cli_helpers.reset_cli_state()
    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(original_level)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture
def store() -> JobStore:
    return JobStore(OWNER)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def control() -> FakeControlApi:
    return FakeControlApi()


@pytest.fixture
def realtime_client() -> FakeRealtimeClient:
    return FakeRealtimeClient()


@pytest.fixture
def fast_realtime() -> RealtimeConfig:
    """Retry policy with millisecond backoff and no timers of its own."""
    return RealtimeConfig(
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
        subscribe_timeout_seconds=None,
        recovery_interval_seconds=None,
    )


@pytest.fixture
def tracker_config(fast_realtime: RealtimeConfig) -> TrackerConfig:
    """Session config with fast timers and in-memory notification markers."""
    return TrackerConfig(
        realtime=fast_realtime,
        poller=PollerConfig(interval_seconds=0.02),
        notifications=NotificationConfig(marker_file=None),
    )

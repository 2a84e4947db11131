"""Job tracking: store, push subscription, fallback polling, health and recovery."""

from genwatch.tracking.event_bus import EventBus
from genwatch.tracking.exceptions import (
    DataInvariantWarning,
    FetchError,
    RecoveryDispatchError,
    RecoveryInProgressError,
    RecoveryNotAllowedError,
    TrackingError,
    TransportError,
)
from genwatch.tracking.health import (
    HealthStatus,
    JobView,
    RecoveryAction,
    classify,
    effective_completion,
    project,
)
from genwatch.tracking.markers import JsonMarkerStore, MarkerStore, MemoryMarkerStore
from genwatch.tracking.notifications import (
    NotificationAggregator,
    NotificationContext,
    NotificationEvent,
)
from genwatch.tracking.poller import FallbackPoller, JobFetcher
from genwatch.tracking.realtime import (
    ChangeEvent,
    ChangeOperation,
    ChannelStatus,
    ConnectionState,
    RealtimeChannel,
    RealtimeClient,
    SubscriptionManager,
)
from genwatch.tracking.recovery import ControlApi, ControlResult, RecoveryDispatcher
from genwatch.tracking.session import ConnectionSignal, RecoveryOutcome, TrackingSession
from genwatch.tracking.store import ChangeKind, JobStore, StoreChange

__all__ = [
    "ChangeEvent",
    "ChangeKind",
    "ChangeOperation",
    "ChannelStatus",
    "ConnectionSignal",
    "ConnectionState",
    "ControlApi",
    "ControlResult",
    "DataInvariantWarning",
    "EventBus",
    "FallbackPoller",
    "FetchError",
    "HealthStatus",
    "JobFetcher",
    "JobStore",
    "JobView",
    "JsonMarkerStore",
    "MarkerStore",
    "MemoryMarkerStore",
    "NotificationAggregator",
    "NotificationContext",
    "NotificationEvent",
    "RealtimeChannel",
    "RealtimeClient",
    "RecoveryAction",
    "RecoveryDispatchError",
    "RecoveryDispatcher",
    "RecoveryInProgressError",
    "RecoveryNotAllowedError",
    "RecoveryOutcome",
    "StoreChange",
    "SubscriptionManager",
    "TrackingError",
    "TrackingSession",
    "TransportError",
    "classify",
    "effective_completion",
    "project",
]

"""Global constants for genwatch.

Centralizes the tracking policy numbers so the config defaults, the health
classifier and the tests agree on one canonical value each.
"""

# =============================================================================
# Push channel (realtime) retry policy
# =============================================================================

REALTIME_MAX_RETRIES = 3
"""Reconnect attempts after a channel error before falling back to polling."""

REALTIME_BACKOFF_BASE_SECONDS = 1.0
"""Delay before the first reconnect attempt; doubles on each attempt."""

REALTIME_BACKOFF_MAX_SECONDS = 10.0
"""Upper bound for a single reconnect delay."""

REALTIME_SUBSCRIBE_TIMEOUT_SECONDS = 10.0
"""Time a fresh channel gets to acknowledge the subscription."""

REALTIME_RECOVERY_INTERVAL_SECONDS = 30.0
"""Interval between fresh-channel probes once the retry series is exhausted."""

REALTIME_CHANNEL_PREFIX = "course-generation-jobs"
"""Prefix of push channel names (prefix-owner-token)."""

REALTIME_NON_RETRYABLE_REASONS = (
    "UNAUTHORIZED",
    "FORBIDDEN",
    "INVALID_TOKEN",
    "QUOTA_EXCEEDED",
)
"""Channel error reasons that no amount of reconnecting will fix."""

# =============================================================================
# Fallback polling
# =============================================================================

POLL_INTERVAL_SECONDS = 3.0
"""Pull interval while the push channel is unavailable."""

POLL_FAILURE_BANNER_THRESHOLD = 2
"""Consecutive fetch failures before a fetch-degraded banner is shown."""

# =============================================================================
# Health classification
# =============================================================================

STALLED_AFTER_MINUTES = 5.0
"""Minutes without an update after which a processing job is stalled."""

STUCK_AFTER_MINUTES = 10.0
"""Minutes without an update after which a processing job is stuck."""

COMPLETION_SUCCESS_RATE = 0.7
"""Success rate at or above which an effectively complete job counts as completed."""

LOW_SUCCESS_RATE = 0.3
"""Success rate below which a failed job is better deleted and retried."""

# =============================================================================
# Notifications
# =============================================================================

RECENT_COMPLETION_MINUTES = 5.0
"""Jobs first seen already complete only celebrate if they finished this recently."""

EVENT_BUS_MAX_QUEUE_SIZE = 500
"""Events kept per notification subscriber before drop-oldest."""

# =============================================================================
# HTTP backend
# =============================================================================

DEFAULT_JOBS_PATH = "/api/knowledge-base/jobs"
"""Base path of the job list and job control endpoints."""

DEFAULT_STREAM_PATH = "/api/knowledge-base/jobs/stream"
"""Server-Sent Events endpoint carrying job change events."""

HTTP_TIMEOUT_SECONDS = 30.0
"""Default timeout for control and fetch requests."""

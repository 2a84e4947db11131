"""Bundled HTTP backends: REST job list/control and the SSE change stream."""

from genwatch.backends.http import HttpJobsApi
from genwatch.backends.sse import SSERealtimeClient

__all__ = ["HttpJobsApi", "SSERealtimeClient"]

"""Server-Sent Events realtime client, using httpx streaming.

Each channel is one long-lived ``GET {stream_path}?owner_id=<id>&channel=<name>``
request read by a background task. The stream speaks four event types:

- ``subscribed``: the server acknowledged the subscription
- ``change``: ``{"operation": "insert"|"update"|"delete", "job": {...}, "job_id": "..."}``
- ``heartbeat``: keep-alive, ignored
- ``error``: ``{"reason": "..."}``, ends the channel

Transport problems are reported through the channel's status callback, never
raised to the subscription manager.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator

import httpx
from pydantic import ValidationError

from genwatch.core.config import ApiConfig
from genwatch.core.logging import get_logger
from genwatch.tracking.realtime import (
    ChangeEvent,
    ChannelStatus,
    EventCallback,
    StatusCallback,
)
from genwatch.tracking.task_utils import cancel_task, log_task_exception

_logger = get_logger("backends.sse")

_STATUS_REASONS = {
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    429: "QUOTA_EXCEEDED",
}


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str, str]]:
    """Parse an SSE line stream into ``(event, data)`` pairs.

    Multi-line data is joined with newlines. Events without a type are
    reported as ``"message"``.
    """
    event_type = ""
    data: list[str] = []
    async for line in lines:
        if not line:
            if data or event_type:
                yield event_type or "message", "\n".join(data)
            event_type, data = "", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event_type = value
        elif field == "data":
            data.append(value)
    if data:
        yield event_type or "message", "\n".join(data)


class SSEChannel:
    """Handle of one open SSE channel."""

    def __init__(self, name: str, task: asyncio.Task[None]) -> None:
        self.name = name
        self._task = task

    @property
    def open(self) -> bool:
        return not self._task.done()

    async def close(self) -> None:
        await cancel_task(self._task)


class SSERealtimeClient:
    """RealtimeClient reading job changes from an SSE endpoint."""

    def __init__(
        self,
        config: ApiConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or ApiConfig()
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._config.base_url,
                headers=self._config.expanded_headers(),
            )
            self._owns_client = True
        return self._client

    async def open_channel(
        self,
        name: str,
        *,
        owner_id: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> SSEChannel:
        client = await self._get_client()
        task = asyncio.create_task(
            self._run(client, name, owner_id, on_event, on_status), name=f"sse-{name}"
        )
        task.add_done_callback(self._on_task_done)
        return SSEChannel(name, task)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _run(
        self,
        client: httpx.AsyncClient,
        name: str,
        owner_id: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> None:
        timeout = httpx.Timeout(
            self._config.timeout_seconds, read=self._config.stream_read_timeout_seconds
        )
        params = {"owner_id": owner_id, "channel": name}
        try:
            async with client.stream(
                "GET", self._config.stream_path, params=params, timeout=timeout
            ) as response:
                if not response.is_success:
                    reason = _STATUS_REASONS.get(
                        response.status_code, f"HTTP_{response.status_code}"
                    )
                    _logger.warning(
                        "sse.stream_rejected",
                        channel=name,
                        status_code=response.status_code,
                    )
                    on_status(ChannelStatus.CHANNEL_ERROR, reason)
                    return

                async for event_type, data in iter_sse(response.aiter_lines()):
                    if not self._handle(name, event_type, data, on_event, on_status):
                        return
        except httpx.TimeoutException:
            _logger.warning("sse.stream_timeout", channel=name)
            on_status(ChannelStatus.TIMED_OUT, "stream timed out")
            return
        except httpx.HTTPError as e:
            _logger.warning("sse.stream_error", channel=name, error=str(e))
            on_status(ChannelStatus.CHANNEL_ERROR, str(e))
            return

        _logger.info("sse.stream_ended", channel=name)
        on_status(ChannelStatus.CLOSED, None)

    def _handle(
        self,
        name: str,
        event_type: str,
        data: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> bool:
        """Dispatch one SSE event. Returns False when the stream must end."""
        if event_type == "subscribed":
            on_status(ChannelStatus.SUBSCRIBED, None)
        elif event_type == "change":
            try:
                event = ChangeEvent.model_validate_json(data)
            except ValidationError as e:
                _logger.warning("sse.invalid_change_event", channel=name, errors=e.error_count())
                return True
            on_event(event)
        elif event_type == "error":
            reason = None
            try:
                body = json.loads(data)
                if isinstance(body, dict) and body.get("reason") is not None:
                    reason = str(body["reason"])
            except ValueError:
                reason = data or None
            on_status(ChannelStatus.CHANNEL_ERROR, reason)
            return False
        elif event_type != "heartbeat":
            _logger.debug("sse.unknown_event", channel=name, event_type=event_type)
        return True

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        log_task_exception(task, _logger, "sse.channel_task_failed")


__all__ = ["SSEChannel", "SSERealtimeClient", "iter_sse"]

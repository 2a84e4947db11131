"""HTTP backend for the job list and the control endpoints, using httpx.

Implements both ``JobFetcher`` and ``ControlApi`` against the application's
REST routes:

- ``GET {jobs_path}?owner_id=<id>``: the owner's non-cleared jobs
- ``POST {jobs_path}/{id}/resume`` and ``POST {jobs_path}/{id}/restart``
- ``DELETE {jobs_path}/{id}``
- ``POST {jobs_path}/{id}/clear``

Error responses carry ``{"error": "..."}``.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from genwatch.core.config import ApiConfig
from genwatch.core.job import Job
from genwatch.core.logging import get_logger
from genwatch.tracking.exceptions import FetchError
from genwatch.tracking.recovery import ControlResult

_logger = get_logger("backends.http")


def _error_message(response: httpx.Response) -> str:
    """Error text from an ``{"error": ...}`` body, or the status line."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"


def _job_rows(payload: Any) -> list[Any]:
    if isinstance(payload, dict):
        payload = payload.get("jobs")
    if not isinstance(payload, list):
        raise FetchError("job list response has an unexpected shape")
    return payload


class HttpJobsApi:
    """Job list and job control over HTTP.

    Example usage::

        api = HttpJobsApi(ApiConfig(base_url="https://app.example.com"))
        jobs = await api.fetch_jobs("user-42")
        result = await api.restart(jobs[0].id)
        await api.aclose()

    Args:
        config: Endpoint configuration.
        client: Pre-built client (tests pass one with a mock transport).
            It must carry the base URL; it is not closed by ``aclose()``.
    """

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
                timeout=httpx.Timeout(self._config.timeout_seconds),
                headers=self._config.expanded_headers(),
            )
            self._owns_client = True
        return self._client

    def _job_path(self, job_id: str, suffix: str = "") -> str:
        return f"{self._config.jobs_path}/{quote(job_id, safe='')}{suffix}"

    # ------------------------------------------------------------------
    # JobFetcher
    # ------------------------------------------------------------------

    async def fetch_jobs(self, owner_id: str) -> list[Job]:
        """Pull the owner's non-cleared jobs, newest first.

        Rows that fail validation are skipped with a warning.

        Raises:
            FetchError: On transport errors, non-2xx answers or a malformed body.
        """
        client = await self._get_client()
        try:
            response = await client.get(self._config.jobs_path, params={"owner_id": owner_id})
        except httpx.TimeoutException as e:
            raise FetchError("fetching jobs timed out") from e
        except httpx.RequestError as e:
            raise FetchError(f"fetching jobs failed: {e}") from e

        if not response.is_success:
            raise FetchError(f"job list request failed: {_error_message(response)}")
        try:
            payload = response.json()
        except ValueError as e:
            raise FetchError("job list response is not valid JSON") from e

        jobs: list[Job] = []
        for row in _job_rows(payload):
            try:
                jobs.append(Job.model_validate(row))
            except ValidationError as e:
                row_id = row.get("id") if isinstance(row, dict) else None
                _logger.warning(
                    "http.invalid_job_row",
                    job_id=row_id,
                    errors=e.error_count(),
                )
        return jobs

    # ------------------------------------------------------------------
    # ControlApi
    # ------------------------------------------------------------------

    async def resume(self, job_id: str) -> ControlResult:
        return await self._control("POST", self._job_path(job_id, "/resume"), job_id, "resume")

    async def restart(self, job_id: str) -> ControlResult:
        return await self._control("POST", self._job_path(job_id, "/restart"), job_id, "restart")

    async def delete(self, job_id: str) -> ControlResult:
        return await self._control("DELETE", self._job_path(job_id), job_id, "delete")

    async def clear(self, job_id: str) -> ControlResult:
        return await self._control("POST", self._job_path(job_id, "/clear"), job_id, "clear")

    async def _control(self, method: str, path: str, job_id: str, action: str) -> ControlResult:
        client = await self._get_client()
        try:
            response = await client.request(method, path)
        except httpx.TimeoutException:
            _logger.warning("http.control_timeout", job_id=job_id, action=action)
            return ControlResult(success=False, error="Request timed out")
        except httpx.RequestError as e:
            _logger.warning("http.control_request_error", job_id=job_id, action=action, error=str(e))
            return ControlResult(success=False, error=str(e))

        if response.is_success:
            _logger.debug("http.control_ok", job_id=job_id, action=action)
            return ControlResult(success=True)

        error = _error_message(response)
        _logger.warning(
            "http.control_failed",
            job_id=job_id,
            action=action,
            status_code=response.status_code,
            error=error,
        )
        return ControlResult(success=False, error=error)

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpJobsApi:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


__all__ = ["HttpJobsApi"]

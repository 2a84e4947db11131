"""Tests for genwatch.backends.http using httpx.MockTransport."""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from genwatch.backends.http import HttpJobsApi
from genwatch.core.config import ApiConfig
from genwatch.tracking.exceptions import FetchError
from genwatch.tracking.recovery import ControlResult
from tests.helpers import OWNER

BASE_URL = "https://app.example.com"

Handler = Callable[[httpx.Request], httpx.Response]


def _row(job_id: str = "job-1", **overrides) -> dict:
    row = {
        "id": job_id,
        "user_id": OWNER,
        "status": "processing",
        "progress_percentage": 40,
        "total_tasks": 10,
        "completed_tasks": 4,
        "created_at": "2025-03-14T11:00:00Z",
        "updated_at": "2025-03-14T12:00:00Z",
    }
    row.update(overrides)
    return row


def _api(handler: Handler) -> tuple[HttpJobsApi, httpx.AsyncClient]:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return HttpJobsApi(ApiConfig(base_url=BASE_URL), client=client), client


class TestFetchJobs:
    """Tests for pulling the job list."""

    @pytest.mark.asyncio
    async def test_list_payload(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[_row("a"), _row("b", status="queued")])

        api, _ = _api(handler)
        jobs = await api.fetch_jobs(OWNER)

        assert [j.id for j in jobs] == ["a", "b"]
        assert jobs[0].owner_id == OWNER
        assert seen[0].method == "GET"
        assert seen[0].url.path == "/api/knowledge-base/jobs"
        assert seen[0].url.params["owner_id"] == OWNER

    @pytest.mark.asyncio
    async def test_wrapped_payload(self):
        api, _ = _api(lambda request: httpx.Response(200, json={"jobs": [_row()]}))
        assert len(await api.fetch_jobs(OWNER)) == 1

    @pytest.mark.asyncio
    async def test_invalid_rows_skipped(self):
        payload = [_row("good"), _row("bad", status="exploded"), "not-a-row"]
        api, _ = _api(lambda request: httpx.Response(200, json=payload))
        assert [j.id for j in await api.fetch_jobs(OWNER)] == ["good"]

    @pytest.mark.asyncio
    async def test_error_response(self):
        api, _ = _api(lambda request: httpx.Response(500, json={"error": "database unavailable"}))
        with pytest.raises(FetchError, match="database unavailable"):
            await api.fetch_jobs(OWNER)

    @pytest.mark.asyncio
    async def test_error_response_without_body(self):
        api, _ = _api(lambda request: httpx.Response(503, text="Service Unavailable"))
        with pytest.raises(FetchError, match="HTTP 503"):
            await api.fetch_jobs(OWNER)

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        api, _ = _api(handler)
        with pytest.raises(FetchError, match="timed out"):
            await api.fetch_jobs(OWNER)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        api, _ = _api(handler)
        with pytest.raises(FetchError, match="connection refused"):
            await api.fetch_jobs(OWNER)

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        api, _ = _api(lambda request: httpx.Response(200, text="<html>login</html>"))
        with pytest.raises(FetchError, match="not valid JSON"):
            await api.fetch_jobs(OWNER)

    @pytest.mark.asyncio
    async def test_unexpected_shape(self):
        api, _ = _api(lambda request: httpx.Response(200, json={"items": []}))
        with pytest.raises(FetchError, match="unexpected shape"):
            await api.fetch_jobs(OWNER)


class TestControl:
    """Tests for the job control endpoints."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("action", "method", "suffix"),
        [
            ("resume", "POST", "/resume"),
            ("restart", "POST", "/restart"),
            ("delete", "DELETE", ""),
            ("clear", "POST", "/clear"),
        ],
    )
    async def test_routes(self, action, method, suffix):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True})

        api, _ = _api(handler)
        result = await getattr(api, action)("job/1")

        assert result == ControlResult(success=True)
        assert seen[0].method == method
        expected = f"/api/knowledge-base/jobs/job%2F1{suffix}".encode()
        assert seen[0].url.raw_path == expected

    @pytest.mark.asyncio
    async def test_error_body(self):
        api, _ = _api(lambda request: httpx.Response(409, json={"error": "Job is locked"}))
        result = await api.restart("job-1")
        assert result == ControlResult(success=False, error="Job is locked")

    @pytest.mark.asyncio
    async def test_error_without_body(self):
        api, _ = _api(lambda request: httpx.Response(502))
        assert await api.resume("job-1") == ControlResult(success=False, error="HTTP 502")

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        api, _ = _api(handler)
        result = await api.delete("job-1")
        assert result == ControlResult(success=False, error="Request timed out")

    @pytest.mark.asyncio
    async def test_request_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        api, _ = _api(handler)
        result = await api.clear("job-1")
        assert not result.success
        assert "connection refused" in result.error


class TestClientLifecycle:
    """Tests for client ownership."""

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self):
        api, client = _api(lambda request: httpx.Response(200, json=[]))
        async with api:
            await api.fetch_jobs(OWNER)
        assert not client.is_closed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_own_client_configured_and_closed(self, monkeypatch):
        monkeypatch.setenv("GENWATCH_TEST_TOKEN", "tok")
        config = ApiConfig(
            base_url=BASE_URL,
            timeout_seconds=5.0,
            headers={"Authorization": "Bearer ${GENWATCH_TEST_TOKEN}"},
        )
        api = HttpJobsApi(config)
        client = await api._get_client()

        assert str(client.base_url).rstrip("/") == BASE_URL
        assert client.headers["Authorization"] == "Bearer tok"
        assert client.timeout.read == 5.0

        await api.aclose()
        assert client.is_closed

    def test_error_body_helper_tolerates_non_dict(self):
        from genwatch.backends.http import _error_message

        response = httpx.Response(400, content=json.dumps(["oops"]).encode())
        assert _error_message(response) == "HTTP 400"

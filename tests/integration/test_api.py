"""
Integration tests for the API endpoints.
"""

from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient

from orchestrator.broker import Backoff, BackoffType, ItemOptions, MemoryQueueBackend
from orchestrator.constants import JobStatus, QueueName


class TestHealthAPI:
    """Tests for health and auth endpoints."""

    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert data["coordination_store"] == "healthy"

    async def test_ready_and_live(self, client: AsyncClient):
        assert (await client.get("/ready")).json() == {"ready": True}
        assert (await client.get("/live")).json() == {"alive": True}

    async def test_token_exchange(self, client: AsyncClient):
        response = await client.post("/auth/token", json={"api_key": "key", "operator": "ops"})

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] > 0

        queues = await client.get(
            "/v1/queues", headers={"Authorization": f"Bearer {data['access_token']}"}
        )
        assert queues.status_code == 200

    async def test_token_rejects_empty_key(self, client: AsyncClient):
        response = await client.post("/auth/token", json={"api_key": "", "operator": "ops"})

        assert response.status_code == 401


class TestJobAPI:
    """Integration tests for job API endpoints."""

    @pytest_asyncio.fixture
    async def created_job(self, client: AsyncClient, auth_headers: dict[str, str]) -> dict:
        """Enqueue a site scan for testing."""
        response = await client.post(
            "/v1/jobs",
            json={"job_type": "SITE_SCAN", "payload": {"tenant_id": "t1", "url": "https://example.com"}},
            headers=auth_headers,
        )
        return response.json()

    async def test_enqueue(self, created_job: dict):
        assert created_job["job_type"] == "SITE_SCAN"
        assert created_job["queue"] == "seo"
        assert created_job["deduplicated"] is False
        assert created_job["item_id"] is not None
        assert created_job["durable_job_id"] is not None

    async def test_enqueue_duplicate(self, client: AsyncClient, auth_headers, created_job: dict):
        response = await client.post(
            "/v1/jobs",
            json={"job_type": "SITE_SCAN", "payload": {"tenant_id": "t1"}},
            headers=auth_headers,
        )

        assert response.status_code == 202
        data = response.json()
        assert data["deduplicated"] is True
        assert data["item_id"] is None
        assert data["durable_job_id"] is None

    async def test_enqueue_with_options(
        self, client: AsyncClient, auth_headers, backend: MemoryQueueBackend
    ):
        response = await client.post(
            "/v1/jobs",
            json={
                "job_type": "GSC_SYNC",
                "payload": {"tenant_id": "t9"},
                "options": {"attempts": 7, "priority": 1},
            },
            headers=auth_headers,
        )

        assert response.status_code == 202
        item = await backend.get_item("gsc", response.json()["item_id"])
        assert item.opts.attempts == 7
        assert item.opts.priority == 1

    async def test_enqueue_with_fixed_backoff(
        self, client: AsyncClient, auth_headers, backend: MemoryQueueBackend
    ):
        response = await client.post(
            "/v1/jobs",
            json={
                "job_type": "SITE_SCAN",
                "payload": {"tenant_id": "t1"},
                "options": {"backoff": {"type": "fixed", "delay_ms": 1000}},
            },
            headers=auth_headers,
        )

        assert response.status_code == 202
        item = await backend.get_item("seo", response.json()["item_id"])
        assert item.opts.backoff == Backoff(type=BackoffType.FIXED, delay_ms=1000)

    async def test_enqueue_rejects_unknown_backoff(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/v1/jobs",
            json={
                "job_type": "SITE_SCAN",
                "payload": {"tenant_id": "t1"},
                "options": {"backoff": {"type": "linear"}},
            },
            headers=auth_headers,
        )

        assert response.status_code == 422

    async def test_enqueue_missing_tenant(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/v1/jobs",
            json={"job_type": "SITE_SCAN", "payload": {}},
            headers=auth_headers,
        )

        assert response.status_code == 422
        assert response.json()["error"] == "invalid_payload"

    async def test_enqueue_unknown_type(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/v1/jobs",
            json={"job_type": "NOT_A_JOB", "payload": {"tenant_id": "t1"}},
            headers=auth_headers,
        )

        assert response.status_code == 422

    async def test_requires_token(self, client: AsyncClient):
        response = await client.post(
            "/v1/jobs",
            json={"job_type": "SITE_SCAN", "payload": {"tenant_id": "t1"}},
        )

        assert response.status_code in (401, 403)

    async def test_rejects_bad_token(self, client: AsyncClient):
        response = await client.get("/v1/jobs", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    async def test_get_job(self, client: AsyncClient, auth_headers, created_job: dict):
        response = await client.get(f"/v1/jobs/{created_job['durable_job_id']}", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == JobStatus.PENDING.value
        assert data["tenant_id"] == "t1"
        assert data["broker_ref"] == f"seo:{created_job['item_id']}"

    async def test_get_job_not_found(self, client: AsyncClient, auth_headers):
        response = await client.get(f"/v1/jobs/{uuid4()}", headers=auth_headers)

        assert response.status_code == 404

    async def test_list_jobs(self, client: AsyncClient, auth_headers, created_job: dict):
        await client.post(
            "/v1/jobs",
            json={"job_type": "GSC_SYNC", "payload": {"tenant_id": "t2"}},
            headers=auth_headers,
        )

        response = await client.get("/v1/jobs", params={"queue": "seo"}, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["jobs"][0]["id"] == created_job["durable_job_id"]
        assert data["has_next"] is False

        response = await client.get("/v1/jobs", params={"page_size": 1}, headers=auth_headers)
        assert response.json()["has_next"] is True

    async def test_job_stats(self, client: AsyncClient, auth_headers, created_job: dict):
        response = await client.get("/v1/jobs/stats/summary", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["stats"]["PENDING"] == 1


class TestQueueAPI:
    """Integration tests for operator queue endpoints."""

    @pytest_asyncio.fixture
    async def failed_item(self, backend: MemoryQueueBackend):
        await backend.add("seo", "SITE_SCAN", {"tenant_id": "t1"}, ItemOptions(attempts=1))
        item = await backend.fetch_next("seo", "token", 1_000)
        await backend.fail(item, "token", "boom", attempts_made=1, retry_delay_ms=None)
        return item

    async def test_overview(self, client: AsyncClient, auth_headers, failed_item):
        response = await client.get("/v1/queues", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert set(data["queues"]) == {queue.value for queue in QueueName}
        assert data["queues"]["seo"]["failed"] == 1
        assert data["totals"]["failed"] == 1

    async def test_detail(self, client: AsyncClient, auth_headers, failed_item):
        response = await client.get("/v1/queues/seo", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "seo"
        assert data["paused"] is False
        assert [item["id"] for item in data["items"]["failed"]] == [failed_item.id]
        assert data["items"]["failed"][0]["failed_reason"] == "boom"

        response = await client.get("/v1/queues/seo", params={"status": "waiting"}, headers=auth_headers)
        assert list(response.json()["items"]) == ["waiting"]

    async def test_unknown_queue(self, client: AsyncClient, auth_headers):
        response = await client.get("/v1/queues/nope", headers=auth_headers)

        assert response.status_code == 422

    async def test_pause_and_resume(self, client: AsyncClient, auth_headers):
        response = await client.post("/v1/queues/seo/pause", headers=auth_headers)
        assert response.status_code == 200
        assert (await client.get("/v1/queues/seo", headers=auth_headers)).json()["paused"] is True

        response = await client.post("/v1/queues/seo/resume", headers=auth_headers)
        assert response.status_code == 200
        assert (await client.get("/v1/queues/seo", headers=auth_headers)).json()["paused"] is False

    async def test_retry(self, client: AsyncClient, auth_headers, backend: MemoryQueueBackend, failed_item):
        response = await client.post(f"/v1/queues/seo/items/{failed_item.id}/retry", headers=auth_headers)

        assert response.status_code == 200
        assert (await backend.counts("seo")).waiting == 1

        # No longer failed
        response = await client.post(f"/v1/queues/seo/items/{failed_item.id}/retry", headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_item_state"

    async def test_retry_missing_item(self, client: AsyncClient, auth_headers):
        response = await client.post("/v1/queues/seo/items/999/retry", headers=auth_headers)

        assert response.status_code == 404

    async def test_remove(self, client: AsyncClient, auth_headers, backend: MemoryQueueBackend, failed_item):
        response = await client.delete(f"/v1/queues/seo/items/{failed_item.id}", headers=auth_headers)

        assert response.status_code == 200
        assert await backend.get_item("seo", failed_item.id) is None

    async def test_remove_active_item(self, client: AsyncClient, auth_headers, backend: MemoryQueueBackend):
        await backend.add("seo", "SITE_SCAN", {}, ItemOptions())
        item = await backend.fetch_next("seo", "token", 60_000)

        response = await client.delete(f"/v1/queues/seo/items/{item.id}", headers=auth_headers)

        assert response.status_code == 409

    @pytest.mark.parametrize("body", [None, {"failed_grace_ms": 0}])
    async def test_clean(self, client: AsyncClient, auth_headers, clock, failed_item, body):
        clock.advance(1)

        response = await client.post("/v1/queues/clean", json=body, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        expected = 0 if body is None else 1
        assert data["total_removed"] == expected
        assert data["removed"]["seo"]["failed"] == expected

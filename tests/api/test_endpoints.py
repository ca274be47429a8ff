"""
API endpoint tests
"""

from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio

from api.main import create_app
from tests.fakes import TENANT, OTHER_TENANT

HEADERS = {"X-Tenant-ID": TENANT}


@pytest_asyncio.fixture
async def client(service, store, registry, rate_limiter, ephemeral, session_maker):
    """ASGI client; startup events do not run, so components are installed directly"""
    app = create_app()
    app.state.components = SimpleNamespace(
        service=service,
        store=store,
        registry=registry,
        rate_limiter=rate_limiter,
        ephemeral=ephemeral,
        session_maker=session_maker,
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client


def job_body(source_id, **overrides):
    body = {
        "jobType": "EXTRACTION",
        "sourceConnectorId": source_id,
        "entities": ["tickets"],
        "config": {"batchSize": 50},
    }
    body.update(overrides)
    return body


async def create_job(client, source_id, **overrides):
    response = await client.post("/jobs", json=job_body(source_id, **overrides), headers=HEADERS)
    assert response.status_code == 201
    return response.json()["data"]


@pytest.mark.asyncio
async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["health"] == "/health"


class TestJobEndpoints:

    @pytest.mark.asyncio
    async def test_create_job(self, client, source_connector):
        response = await client.post(
            "/jobs", json=job_body(source_connector.id), headers={**HEADERS, "X-Request-ID": "req-123"}
        )

        assert response.status_code == 201
        payload = response.json()
        assert payload["success"] is True
        assert payload["request_id"] == "req-123"
        assert payload["data"]["status"] == "QUEUED"
        assert payload["data"]["tenant_id"] == TENANT
        assert payload["data"]["config"]["batchSize"] == 50
        assert response.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_tenant_header_required(self, client, source_connector):
        response = await client.post("/jobs", json=job_body(source_connector.id))

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "error": "VALIDATION_ERROR",
            "message": "X-Tenant-ID header is required",
        }

    @pytest.mark.asyncio
    async def test_unknown_connector_is_404(self, client):
        response = await client.post("/jobs", json=job_body("missing"), headers=HEADERS)

        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_unsupported_entity_is_400(self, client, source_connector):
        response = await client.post(
            "/jobs", json=job_body(source_connector.id, entities=["changes"]), headers=HEADERS
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_migration_without_destination_is_rejected(self, client, source_connector):
        response = await client.post(
            "/jobs", json=job_body(source_connector.id, jobType="MIGRATION"), headers=HEADERS
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_job_is_tenant_scoped(self, client, source_connector):
        job = await create_job(client, source_connector.id)

        response = await client.get(f"/jobs/{job['id']}", headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["data"]["id"] == job["id"]

        response = await client.get(f"/jobs/{job['id']}", headers={"X-Tenant-ID": OTHER_TENANT})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list_and_stats(self, client, source_connector):
        first = await create_job(client, source_connector.id)
        await create_job(client, source_connector.id)
        await client.post(f"/jobs/{first['id']}/cancel", headers=HEADERS)

        response = await client.get("/jobs", headers=HEADERS)
        assert len(response.json()["data"]) == 2

        response = await client.get("/jobs", params={"status": "CANCELLED"}, headers=HEADERS)
        assert [j["id"] for j in response.json()["data"]] == [first["id"]]

        response = await client.get("/jobs/stats", headers=HEADERS)
        assert response.json()["data"] == {"total": 2, "by_status": {"QUEUED": 1, "CANCELLED": 1}}

    @pytest.mark.asyncio
    async def test_progress_and_timeline(self, client, source_connector):
        job = await create_job(client, source_connector.id)

        response = await client.get(f"/jobs/{job['id']}/progress", headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["message"] == "QUEUED"
        assert response.json()["data"]["percentage"] == 0

        response = await client.get(f"/jobs/{job['id']}/timeline", headers=HEADERS)
        [event] = response.json()["data"]
        assert event["message"] == "Job queued"
        assert event["metadata"]["entities"] == ["tickets"]

    @pytest.mark.asyncio
    async def test_cancel(self, client, source_connector, ephemeral):
        job = await create_job(client, source_connector.id)

        response = await client.post(f"/jobs/{job['id']}/cancel", headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["data"] == {"job_id": job["id"], "status": "CANCELLED", "cancelled": True}

        response = await client.get(f"/jobs/{job['id']}", headers=HEADERS)
        assert response.json()["data"]["error_message"] == "Job cancelled by user"

        response = await client.post(f"/jobs/{job['id']}/cancel", headers=HEADERS)
        assert response.status_code == 400


class TestConnectorEndpoints:

    @pytest.mark.asyncio
    async def test_connector_types(self, client):
        response = await client.get("/connectors/types")

        assert response.status_code == 200
        connectors = response.json()["data"]["connectors"]
        assert [c["type"] for c in connectors] == ["FRESHSERVICE", "MANAGEENGINE_SDP"]
        fields = {f["name"]: f for f in connectors[0]["config_fields"]}
        assert fields["api_key"]["sensitive"] is True
        assert fields["domain"]["sensitive"] is False

    @pytest.mark.asyncio
    async def test_validate_config(self, client):
        response = await client.post(
            "/connectors/types/FRESHSERVICE/validate",
            json={"config": {"domain": "acme.freshservice.com"}}
        )
        assert response.json()["data"] == {"valid": False, "errors": ["API Key is required"]}

        response = await client.post(
            "/connectors/types/freshservice/validate",
            json={"config": {"domain": "acme.freshservice.com", "api_key": "k"}}
        )
        assert response.json()["data"]["valid"] is True

    @pytest.mark.asyncio
    async def test_validate_unknown_type(self, client):
        response = await client.post("/connectors/types/SERVICENOW/validate", json={"config": {}})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_rate_limit_status(self, client, rate_limiter):
        await rate_limiter.check_and_reserve(TENANT, "FRESHSERVICE", n=2)

        response = await client.get("/connectors/types/FRESHSERVICE/rate-limit", headers=HEADERS)
        data = response.json()["data"]
        assert data["current_requests"] == 2
        assert data["remaining"] == 58

        response = await client.get(
            "/connectors/types/FRESHSERVICE/rate-limit", headers={"X-Tenant-ID": OTHER_TENANT}
        )
        assert response.json()["data"]["current_requests"] == 0


class TestHealthEndpoint:

    @pytest.mark.asyncio
    async def test_healthy(self, client, source_connector):
        await create_job(client, source_connector.id)

        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database_connected"] is True
        assert data["active_jobs"] == 1
        assert data["failed_jobs"] == 0

    @pytest.mark.asyncio
    async def test_redis_down_degrades(self, client, ephemeral):
        ephemeral.fail = True

        response = await client.get("/health")

        assert response.json()["status"] == "degraded"
        assert response.json()["redis_connected"] is False

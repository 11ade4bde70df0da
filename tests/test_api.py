"""
API Integration Tests
=====================
Tests for the FastAPI endpoints against an orchestrator wired with test
doubles. The application lifespan is not run.
"""

import asyncio
import json
from unittest.mock import patch

import pytest
from httpx import AsyncClient, ASGITransport

from harborscan.exceptions import ImageResolutionException, ScanJobNotFoundException
from harborscan.main import create_app, get_orchestrator


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def app(settings, orchestrator):
    application = create_app(settings)
    application.state.orchestrator = orchestrator
    application.dependency_overrides[get_orchestrator] = lambda: orchestrator
    return application


@pytest.fixture
async def client(app):
    """Async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def start(client, payload=None) -> dict:
    response = await client.post("/api/v1/scans", json=payload or {"image": "nginx:1.27"})
    assert response.status_code == 202
    return response.json()


def parse_sse(body: str) -> list[tuple[str, dict]]:
    events = []
    for block in body.strip().split("\n\n"):
        lines = [line for line in block.splitlines() if not line.startswith(":")]
        if not lines:
            continue
        name = lines[0].removeprefix("event: ")
        data = json.loads(lines[1].removeprefix("data: "))
        events.append((name, data))
    return events


# =============================================================================
# HEALTH
# =============================================================================

class TestHealth:

    async def test_health(self, client, settings):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == settings.app_version
        assert data["active_jobs"] == 0
        assert "X-Request-ID" in response.headers

    async def test_openapi_documents_errors(self, client):
        response = await client.get("/openapi.json")
        assert response.status_code == 200
        paths = response.json()["paths"]
        assert "404" in paths["/api/v1/scans/{request_id}/status"]["get"]["responses"]
        assert "422" in paths["/api/v1/scans"]["post"]["responses"]

    async def test_active_jobs_counted(self, client, resolver):
        resolver.export_gate = asyncio.Event()
        await start(client)
        response = await client.get("/health")
        assert response.json()["active_jobs"] == 1


# =============================================================================
# START SCAN
# =============================================================================

class TestCreateScan:

    async def test_create_scan(self, client, orchestrator):
        data = await start(client, {"image": "nginx", "tag": "1.27", "template": "quick"})
        assert data["status"] == "RUNNING"
        assert data["message"] == "Scan started"

        await orchestrator.wait(data["request_id"])
        job = orchestrator.get_job(data["request_id"])
        assert job.status.value == "SUCCESS"
        assert str(job.scan_id) == data["scan_id"]

    async def test_validation_error(self, client):
        response = await client.post("/api/v1/scans", json={"image": ""})
        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["errors"]

    async def test_unknown_field_rejected(self, client):
        response = await client.post("/api/v1/scans", json={"image": "nginx", "priority": "high"})
        assert response.status_code == 422

    async def test_unknown_template(self, client):
        response = await client.post("/api/v1/scans", json={"image": "nginx", "template": "everything"})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "INVALID_SCAN_REQUEST"

    async def test_resolution_failure(self, client, resolver, orchestrator):
        resolver.resolve_error = ImageResolutionException("nginx:nope", "manifest unknown")
        response = await client.post("/api/v1/scans", json={"image": "nginx", "tag": "nope"})
        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "IMAGE_RESOLUTION_FAILED"
        assert "manifest unknown" in error["message"]
        assert orchestrator.list_jobs() == []


# =============================================================================
# STATUS & LISTING
# =============================================================================

class TestStatus:

    async def test_status(self, client, orchestrator):
        data = await start(client)
        await orchestrator.wait(data["request_id"])

        response = await client.get(f"/api/v1/scans/{data['request_id']}/status")
        assert response.status_code == 200
        job = response.json()
        assert job["status"] == "SUCCESS"
        assert job["progress"] == 100
        assert job["phase"] == "done"
        assert job["finished_at"] is not None

    async def test_status_not_found(self, client):
        response = await client.get("/api/v1/scans/20261019-000000-deadbeef/status")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "SCAN_JOB_NOT_FOUND"

    async def test_list_jobs(self, client, orchestrator):
        first = await start(client)
        second = await start(client, {"image": "redis:7"})
        await orchestrator.wait(first["request_id"])
        await orchestrator.wait(second["request_id"])

        response = await client.get("/api/v1/scans/jobs")
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert {j["image"] for j in data["jobs"]} == {"nginx:1.27", "redis:7"}

    async def test_scan_record(self, client, orchestrator):
        data = await start(client)
        await orchestrator.wait(data["request_id"])

        response = await client.get(f"/api/v1/scans/records/{data['scan_id']}")
        assert response.status_code == 200
        record = response.json()
        assert record["status"] == "SUCCESS"
        assert record["risk_score"] == 72
        assert record["compliance_grade"] == "B"

    async def test_scan_record_bad_id(self, client):
        response = await client.get("/api/v1/scans/records/not-a-uuid")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "SCAN_NOT_FOUND"


# =============================================================================
# CANCEL
# =============================================================================

class TestCancel:

    async def test_cancel_running(self, client, orchestrator, resolver):
        resolver.export_gate = asyncio.Event()
        data = await start(client)

        response = await client.post(f"/api/v1/scans/{data['request_id']}/cancel")
        assert response.status_code == 200
        assert response.json() == {
            "request_id": data["request_id"],
            "cancelled": True,
            "outcome": "cancelled",
        }

        again = await client.post(f"/api/v1/scans/{data['request_id']}/cancel")
        assert again.json()["outcome"] == "already_terminal"
        assert again.json()["cancelled"] is False

    async def test_cancel_unknown_is_not_an_error(self, client):
        response = await client.post("/api/v1/scans/20261019-000000-deadbeef/cancel")
        assert response.status_code == 200
        assert response.json()["outcome"] == "not_found"


# =============================================================================
# SERVER-SENT EVENTS
# =============================================================================

class TestEvents:

    async def test_stream_until_terminal(self, client):
        data = await start(client)

        response = await client.get(f"/api/v1/scans/{data['request_id']}/events")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = parse_sse(response.text)
        assert events[0] == ("connected", {"request_id": data["request_id"]})
        progress = [payload for name, payload in events if name == "progress"]
        assert progress[-1]["status"] == "SUCCESS"
        assert progress[-1]["progress"] == 100
        running = [p["progress"] for p in progress if p["status"] == "RUNNING"]
        assert running == sorted(running)

    async def test_stream_finished_scan(self, client, orchestrator):
        data = await start(client)
        await orchestrator.wait(data["request_id"])

        response = await client.get(f"/api/v1/scans/{data['request_id']}/events")
        events = parse_sse(response.text)
        assert [name for name, _ in events] == ["connected", "progress"]
        assert events[1][1]["status"] == "SUCCESS"

    async def test_stream_unknown_job(self, client):
        response = await client.get("/api/v1/scans/20261019-000000-deadbeef/events")
        assert response.status_code == 404

    async def test_job_vanishing_mid_stream_emits_error_event(self, client, orchestrator, resolver):
        resolver.export_gate = asyncio.Event()
        data = await start(client)

        async def vanished(request_id, heartbeat=None):
            yield None
            raise ScanJobNotFoundException(request_id)

        with patch.object(orchestrator, "watch", vanished):
            response = await client.get(f"/api/v1/scans/{data['request_id']}/events")

        assert response.status_code == 200
        events = parse_sse(response.text)
        assert [name for name, _ in events] == ["connected", "error"]
        error = events[1][1]["error"]
        assert error["code"] == "SCAN_JOB_NOT_FOUND"
        assert error["details"] == {"request_id": data["request_id"]}

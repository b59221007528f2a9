from datetime import timedelta

from guildpass.infra.database import utcnow
from guildpass.v1.infra.jobs.service import JobService


async def test_health_check_success(async_client):
    """Test health check endpoint returns correct format."""
    response = await async_client.get("/v1/healthz")

    assert response.status_code == 200

    data = response.json()
    assert data["ok"] is True

    health_data = data["data"]
    assert health_data["ok"] is True
    assert health_data["version"] == "1.0.0"
    assert health_data["database"]["connected"] is True
    assert health_data["queue"] == {
        "pending_ready": 0,
        "processing": 0,
        "oldest_lease_age_seconds": None,
        "failed_jobs": 0,
        "failed_webhooks": 0,
    }


async def test_health_check_response_structure(async_client):
    """Test health check response envelope structure."""
    response = await async_client.get("/v1/healthz")

    data = response.json()
    for key in ["ok", "data", "message", "request_id"]:
        assert key in data
    assert "X-Request-ID" in response.headers


async def test_caller_request_id_is_kept(async_client):
    response = await async_client.get(
        "/v1/jobs/00000000-0000-0000-0000-000000000000",
        headers={"X-Request-ID": "req-abc"},
    )

    assert response.status_code == 404
    assert response.headers["X-Request-ID"] == "req-abc"
    body = response.json()
    assert body["request_id"] == "req-abc"
    assert body["error"]["code"] == 404


async def test_health_check_reports_queue_backlog(
    async_client, db_session, test_settings
):
    service = JobService(test_settings)
    claimed_at = utcnow() - timedelta(seconds=30)
    await service.enqueue(
        db_session,
        "seat_audit",
        {"tenant_key": "t", "connector_id": "c", "guild_id": "g1"},
        now=claimed_at,
    )
    await service.enqueue(
        db_session,
        "seat_audit",
        {"tenant_key": "t", "connector_id": "c", "guild_id": "g2"},
        now=claimed_at,
    )
    await service.claim(db_session, "seat_audit", limit=1, now=claimed_at)

    response = await async_client.get("/v1/healthz")
    queue = response.json()["data"]["queue"]

    assert queue["pending_ready"] == 1
    assert queue["processing"] == 1
    assert queue["oldest_lease_age_seconds"] >= 30

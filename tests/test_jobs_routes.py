import json
from datetime import timedelta

from guildpass.infra.database import utcnow
from guildpass.v1.infra.jobs.service import JobService

SEAT_SCOPE = {"tenant_key": "t", "connector_id": "c", "guild_id": "g1"}


async def enqueue(async_client, worker_headers, family, scope, **body):
    response = await async_client.post(
        f"/v1/jobs/{family}/enqueue",
        json={"scope": scope, **body},
        headers=worker_headers,
    )
    assert response.status_code == 200
    return response.json()["data"]


async def test_enqueue_claim_complete_over_http(async_client, worker_headers):
    first = await enqueue(
        async_client, worker_headers, "seat_audit", SEAT_SCOPE, source="manual"
    )
    second = await enqueue(async_client, worker_headers, "seat_audit", SEAT_SCOPE)
    assert first["deduped"] is False
    assert second["deduped"] is True
    assert second["job_id"] == first["job_id"]

    response = await async_client.post(
        "/v1/jobs/seat_audit/claim",
        json={"limit": 50, "worker_id": "w1"},
        headers=worker_headers,
    )
    [job] = response.json()["data"]["jobs"]
    assert job["job_id"] == first["job_id"]
    assert job["attempt_count"] == 1
    assert job["context"] == {
        "seat_limit": None,
        "seat_enforcement_enabled": False,
        "target_channel_ids": [],
    }

    response = await async_client.post(
        "/v1/jobs/seat_audit/complete",
        json={
            "job_id": job["job_id"],
            "claim_token": job["claim_token"],
            "success": True,
            "result": {"seats_used": 3},
        },
        headers=worker_headers,
    )
    assert response.json()["data"] == {
        "ok": True,
        "ignored": False,
        "reason": None,
        "status": "completed",
    }

    response = await async_client.get(f"/v1/jobs/{job['job_id']}")
    assert response.json()["data"]["status"] == "completed"


async def test_enqueue_invalid_scope_returns_422(async_client, worker_headers):
    response = await async_client.post(
        "/v1/jobs/seat_audit/enqueue",
        json={"scope": {"tenant_key": "t"}},
        headers=worker_headers,
    )
    assert response.status_code == 422
    assert response.json()["error"]["details"]["missing"] == [
        "connector_id",
        "guild_id",
    ]


async def test_unknown_family_returns_404(async_client, worker_headers):
    response = await async_client.post(
        "/v1/jobs/nope/claim", json={}, headers=worker_headers
    )
    assert response.status_code == 404


async def test_list_and_filter_jobs(async_client, worker_headers):
    await enqueue(async_client, worker_headers, "seat_audit", SEAT_SCOPE)
    await enqueue(
        async_client,
        worker_headers,
        "seat_audit",
        {**SEAT_SCOPE, "guild_id": "g2"},
    )
    await async_client.post(
        "/v1/jobs/seat_audit/claim", json={"limit": 1}, headers=worker_headers
    )

    response = await async_client.get(
        "/v1/jobs", params={"family": "seat_audit", "status": "pending"}
    )
    data = response.json()["data"]
    assert data["total"] == 1
    assert data["jobs"][0]["status"] == "pending"

    response = await async_client.get("/v1/jobs/stats/overview")
    stats = response.json()["data"]
    assert stats["total_jobs"] == 2
    assert stats["processing"] == 1


async def test_get_missing_job(async_client):
    response = await async_client.get(
        "/v1/jobs/00000000-0000-0000-0000-000000000000"
    )
    assert response.status_code == 404


async def test_reclaim_endpoint(async_client, db_session, test_settings):
    service = JobService(test_settings)
    past = utcnow() - timedelta(minutes=10)
    await service.enqueue(db_session, "seat_audit", SEAT_SCOPE, now=past)
    await service.claim(db_session, "seat_audit", now=past)

    response = await async_client.post(
        "/v1/jobs/reclaim-expired", params={"ttl_s": 60}
    )

    assert response.json()["data"] == {"reclaimed": 1, "lease_ttl_s": 60}


async def test_wake_state_endpoint(async_client, worker_headers):
    await enqueue(async_client, worker_headers, "seat_audit", SEAT_SCOPE)

    response = await async_client.get("/v1/jobs/wake", headers=worker_headers)

    data = response.json()["data"]
    assert data["families"]["seat_audit"]["pending_ready"] == 1
    assert data["families"]["role_sync"] == {
        "pending_ready": 0,
        "next_run_after": None,
        "pending_total": 0,
    }
    assert isinstance(data["server_now"], int)


async def test_wake_stream_sends_wake_event(async_client, worker_headers):
    await enqueue(async_client, worker_headers, "seat_audit", SEAT_SCOPE)

    response = await async_client.get(
        "/v1/jobs/wake/stream",
        params={"max_events": 1},
        headers=worker_headers,
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    lines = response.text.strip().splitlines()
    assert lines[0] == "event: wake"
    payload = json.loads(lines[1].removeprefix("data: "))
    assert payload["families"]["seat_audit"]["pending_ready"] == 1


async def test_wake_stream_requires_worker_token(async_client):
    response = await async_client.get("/v1/jobs/wake/stream")
    assert response.status_code == 401

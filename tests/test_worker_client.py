import json

import httpx
import pytest
from pydantic import ValidationError

from guildpass_worker.client.base import WorkerAPIError, unwrap_response
from guildpass_worker.client.endpoints import (
    GuildPassClient,
    QueueClient,
    client_from_config,
)
from guildpass_worker.schemas import ClaimedJob
from guildpass_worker.settings import WorkerSettings
from guildpass_worker.utils.config_manager import ConfigManager

CLAIMED = {
    "job_id": "7d0e3a52-8b51-4b4e-9c55-3b7f4f1f6a10",
    "family": "role_sync",
    "claim_token": "claim-1",
    "scope": {
        "guild_id": "g1",
        "discord_user_id": "u1",
        "role_id": "r1",
        "action": "grant",
    },
    "payload": {},
    "context": {},
    "attempt_count": 1,
    "max_attempts": 5,
    "source": "payment_order.paid",
}


def envelope(data):
    return {"ok": True, "data": data, "message": None}


@pytest.fixture
def worker_settings() -> WorkerSettings:
    return WorkerSettings(
        api_base_url="http://test",
        api_token="worker-test-token",
        worker_id="worker-test",
    )


class TestUnwrap:
    def test_envelope_and_bare_bodies(self):
        assert unwrap_response(httpx.Response(200, json=envelope({"a": 1}))) == {"a": 1}
        assert unwrap_response(httpx.Response(200, json={"ok": True, "deduped": True})) == {
            "ok": True,
            "deduped": True,
        }

    def test_error_shapes(self):
        with pytest.raises(WorkerAPIError) as exc_info:
            unwrap_response(
                httpx.Response(404, json={"ok": False, "error": {"message": "Job not found"}})
            )
        assert exc_info.value.status_code == 404
        assert "Job not found" in str(exc_info.value)

        with pytest.raises(WorkerAPIError, match="invalid_signature"):
            unwrap_response(httpx.Response(401, json={"ok": False, "error": "invalid_signature"}))

        with pytest.raises(WorkerAPIError, match="Invalid JSON"):
            unwrap_response(httpx.Response(502, text="<html>bad gateway</html>"))


class TestQueueClient:
    async def test_claim_and_complete(self, worker_settings):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path == "/v1/jobs/role_sync/claim":
                return httpx.Response(200, json=envelope({"jobs": [CLAIMED]}))
            if request.url.path == "/v1/jobs/role_sync/complete":
                return httpx.Response(
                    200, json=envelope({"ok": True, "ignored": False, "status": "succeeded"})
                )
            return httpx.Response(404, json={"ok": False, "error": {"message": "nope"}})

        async with QueueClient(worker_settings, transport=httpx.MockTransport(handler)) as queue:
            [job] = await queue.claim("role_sync", 5)
            outcome = await queue.complete(job, success=True, result={"seen": 1})

        assert job.job_id == CLAIMED["job_id"]
        assert outcome.status == "succeeded"

        claim_request, complete_request = requests
        assert claim_request.headers["Authorization"] == "Bearer worker-test-token"
        assert json.loads(claim_request.content) == {"limit": 5, "worker_id": "worker-test"}
        body = json.loads(complete_request.content)
        assert body["claim_token"] == "claim-1"
        assert body["error"] is None
        assert body["result"] == {"seen": 1}

    async def test_ignored_completion(self, worker_settings):
        def handler(request):
            return httpx.Response(
                200, json=envelope({"ok": False, "ignored": True, "reason": "stale_claim"})
            )

        async with QueueClient(worker_settings, transport=httpx.MockTransport(handler)) as queue:
            outcome = await queue.complete(
                queue_job(), success=False, error="member_not_in_guild:u1"
            )

        assert outcome.ignored is True
        assert outcome.reason == "stale_claim"

    async def test_wake_state_and_errors(self, worker_settings):
        def handler(request):
            if request.url.path == "/v1/jobs/wake":
                return httpx.Response(
                    200,
                    json=envelope(
                        {"families": {"role_sync": {"pending_ready": 2}}, "server_now": 5}
                    ),
                )
            return httpx.Response(401, json={"ok": False, "error": {"message": "Invalid worker token"}})

        async with QueueClient(worker_settings, transport=httpx.MockTransport(handler)) as queue:
            state = await queue.wake_state()
            with pytest.raises(WorkerAPIError) as exc_info:
                await queue.claim("role_sync", 1)

        assert state.families["role_sync"].pending_ready == 2
        assert exc_info.value.status_code == 401

    async def test_connection_errors_are_wrapped(self, worker_settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with QueueClient(worker_settings, transport=httpx.MockTransport(handler)) as queue:
            with pytest.raises(WorkerAPIError, match="Connection failed"):
                await queue.claim("role_sync", 1)

    async def test_stream_wake_lines(self, worker_settings):
        def handler(request):
            assert request.headers["Accept"] == "text/event-stream"
            return httpx.Response(
                200,
                content=b'event: wake\ndata: {"families": {}, "server_now": 1}\n\n',
                headers={"Content-Type": "text/event-stream"},
            )

        async with QueueClient(worker_settings, transport=httpx.MockTransport(handler)) as queue:
            lines = [line async for line in queue.stream_wake_lines()]

        assert lines[:2] == ["event: wake", 'data: {"families": {}, "server_now": 1}']

    async def test_stream_rejection(self, worker_settings):
        def handler(request):
            return httpx.Response(401, json={"ok": False})

        async with QueueClient(worker_settings, transport=httpx.MockTransport(handler)) as queue:
            with pytest.raises(WorkerAPIError) as exc_info:
                async for _ in queue.stream_wake_lines():
                    pass

        assert exc_info.value.status_code == 401


def queue_job() -> ClaimedJob:
    return ClaimedJob.model_validate(CLAIMED)


class TestGuildPassClient:
    def test_operator_and_replay_headers(self):
        seen = {}

        def handler(request):
            seen[request.url.path] = request.headers
            return httpx.Response(200, json=envelope({"failures": []}))

        with GuildPassClient(
            "http://test",
            operator_token="op",
            replay_token="rp",
            transport=httpx.MockTransport(handler),
        ) as client:
            client.list_jobs()
            client.list_webhook_failures()

        assert seen["/v1/jobs"]["Authorization"] == "Bearer op"
        assert seen["/v1/webhooks/sellapp/failures"]["X-Replay-Token"] == "rp"

    def test_client_from_config(self, tmp_path):
        manager = ConfigManager(tmp_path)
        manager.set("api.base_url", "http://guildpass.internal/")
        manager.set("api.worker_token", "wt")

        client = client_from_config(manager)

        assert client.api.base_url == "http://guildpass.internal"
        assert client.worker_token == "wt"


class TestWorkerSettings:
    def test_claim_limits(self, worker_settings):
        assert worker_settings.claim_limits() == {
            "role_sync": 5,
            "signal_mirror": 10,
            "seat_audit": 3,
        }

    def test_fallback_window_must_be_ordered(self):
        with pytest.raises(ValidationError):
            WorkerSettings(wake_fallback_min_ms=900, wake_fallback_max_ms=300)

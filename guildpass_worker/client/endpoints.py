"""API Endpoint Wrappers - typed calls for the worker and the operator CLI"""

from collections.abc import AsyncIterator
from typing import Any

import httpx

from guildpass_worker.client.base import APIClient, AsyncAPIClient, WorkerAPIError
from guildpass_worker.schemas import ClaimedJob, CompleteOutcome, WakeState
from guildpass_worker.settings import WorkerSettings
from guildpass_worker.utils.config_manager import ConfigManager, config


class QueueClient:
    """Worker RPCs: claim, complete and the wake feed"""

    def __init__(
        self,
        settings: WorkerSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.api = AsyncAPIClient(
            base_url=settings.api_base_url,
            timeout=settings.request_timeout_s,
            token=settings.api_token,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.api.aclose()

    async def aclose(self) -> None:
        await self.api.aclose()

    async def claim(self, family: str, limit: int) -> list[ClaimedJob]:
        data = await self.api.post(
            f"/jobs/{family}/claim",
            json={"limit": limit, "worker_id": self.settings.worker_id},
        )
        return [ClaimedJob.model_validate(job) for job in data.get("jobs", [])]

    async def complete(
        self,
        job: ClaimedJob,
        success: bool,
        error: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> CompleteOutcome:
        data = await self.api.post(
            f"/jobs/{job.family}/complete",
            json={
                "job_id": job.job_id,
                "claim_token": job.claim_token,
                "success": success,
                "error": error,
                "result": result or {},
            },
        )
        return CompleteOutcome.model_validate(data)

    async def wake_state(self) -> WakeState:
        return WakeState.model_validate(await self.api.get("/jobs/wake"))

    async def stream_wake_lines(self) -> AsyncIterator[str]:
        """Raw lines of the server-sent wake feed until the server closes it."""
        try:
            async with self.api.client.stream(
                "GET",
                "/v1/jobs/wake/stream",
                headers={"Accept": "text/event-stream"},
                timeout=httpx.Timeout(self.settings.request_timeout_s, read=None),
            ) as response:
                if response.status_code >= 400:
                    raise WorkerAPIError(
                        f"Wake stream rejected: {response.status_code}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    yield line
        except httpx.RequestError as e:
            raise WorkerAPIError(f"Wake stream failed: {e}") from None


class GuildPassClient:
    """Operator endpoints used by the CLI"""

    def __init__(
        self,
        base_url: str,
        operator_token: str | None = None,
        worker_token: str | None = None,
        replay_token: str | None = None,
        timeout: float = 30,
        transport: httpx.BaseTransport | None = None,
    ):
        self.worker_token = worker_token
        self.replay_token = replay_token
        self.api = APIClient(
            base_url=base_url,
            timeout=timeout,
            token=operator_token,
            transport=transport,
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    def _worker_headers(self) -> dict[str, str]:
        if not self.worker_token:
            return {}
        return {"Authorization": f"Bearer {self.worker_token}"}

    def _replay_headers(self) -> dict[str, str]:
        if not self.replay_token:
            return {}
        return {"X-Replay-Token": self.replay_token}

    # Health Check
    def health_check(self) -> dict[str, Any]:
        return self.api.get("/healthz")

    # Jobs
    def list_jobs(
        self,
        family: str | None = None,
        status: list[str] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if family:
            params["family"] = family
        if status:
            params["status"] = status
        return self.api.get("/jobs", params)

    def get_job(self, job_id: str) -> dict[str, Any]:
        return self.api.get(f"/jobs/{job_id}")

    def job_stats(self) -> dict[str, Any]:
        return self.api.get("/jobs/stats/overview")

    def reclaim_expired(self, ttl_s: int | None = None) -> dict[str, Any]:
        params = {"ttl_s": ttl_s} if ttl_s else None
        return self.api.request("POST", "/jobs/reclaim-expired", params=params)

    def wake_state(self) -> dict[str, Any]:
        return self.api.get("/jobs/wake", headers=self._worker_headers())

    # Webhooks
    def list_webhook_failures(self, limit: int = 50) -> dict[str, Any]:
        return self.api.get(
            "/webhooks/sellapp/failures",
            {"limit": limit},
            headers=self._replay_headers(),
        )

    def replay_webhook(self, event_id: str) -> dict[str, Any]:
        return self.api.post(
            "/webhooks/sellapp/replay",
            {"event_id": event_id},
            headers=self._replay_headers(),
        )

    # Seat audit
    def seat_audit_refresh(
        self, tenant_key: str, connector_id: str, guild_id: str
    ) -> dict[str, Any]:
        return self.api.post(
            "/seat-audit/refresh",
            {
                "tenant_key": tenant_key,
                "connector_id": connector_id,
                "guild_id": guild_id,
            },
        )

    def seat_audit_sweep(self, limit: int | None = None) -> dict[str, Any]:
        return self.api.post("/seat-audit/sweep", {"limit": limit})

    def seat_audit_gate(
        self,
        tenant_key: str,
        connector_id: str,
        guild_id: str,
        max_age_ms: int | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "tenant_key": tenant_key,
            "connector_id": connector_id,
            "guild_id": guild_id,
        }
        if max_age_ms is not None:
            params["max_age_ms"] = max_age_ms
        return self.api.get("/seat-audit/gate", params, headers=self._worker_headers())


def client_from_config(manager: ConfigManager | None = None) -> GuildPassClient:
    """Operator client built from the CLI configuration file"""
    api_config = (manager or config).load_config().get("api", {})
    return GuildPassClient(
        base_url=api_config.get("base_url", "http://localhost:8000"),
        operator_token=api_config.get("operator_token") or None,
        worker_token=api_config.get("worker_token") or None,
        replay_token=api_config.get("replay_token") or None,
        timeout=float(api_config.get("timeout", 30)),
    )

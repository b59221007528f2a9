"""Worker-side views of the queue RPC payloads."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ClaimedJob(BaseModel):
    job_id: str
    family: str
    claim_token: str
    scope: dict[str, Any]
    payload: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    attempt_count: int
    max_attempts: int
    source: str | None = None
    run_after: datetime | None = None
    created_at: datetime | None = None


class CompleteOutcome(BaseModel):
    ok: bool
    ignored: bool = False
    reason: str | None = None
    status: str | None = None


class WakeFamilyState(BaseModel):
    pending_ready: int = 0
    next_run_after: int | None = None
    pending_total: int = 0


class WakeState(BaseModel):
    """Per-family readiness with the server clock, all times in epoch ms."""

    families: dict[str, WakeFamilyState] = Field(default_factory=dict)
    server_now: int

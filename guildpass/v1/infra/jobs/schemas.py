"""
Job queue Pydantic schemas: worker RPC payloads, admin views and the wake feed.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class EnqueueRequest(BaseModel):
    """Schema for requesting work on a scope."""

    scope: dict[str, Any] = Field(..., description="Family scope fields")
    source: str | None = Field(default=None, description="Reason for the request")
    payload: dict[str, Any] | None = Field(
        default=None, description="Execution inputs outside the scope"
    )
    run_after: datetime | None = Field(
        default=None, description="Earliest time to run the job"
    )


class EnqueueResult(BaseModel):
    """Outcome of an enqueue: the surviving job and whether it was collapsed."""

    job_id: UUID
    deduped: bool
    status: str


class ClaimRequest(BaseModel):
    limit: int | None = Field(default=None, description="Batch size, clamped to 1..20")
    worker_id: str | None = Field(default=None, description="Claiming worker identity")


class ClaimedJob(BaseModel):
    """A leased job handed to a worker together with its execution context."""

    job_id: UUID
    family: str
    claim_token: str
    scope: dict[str, Any]
    payload: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    attempt_count: int
    max_attempts: int
    source: str | None = None
    run_after: datetime
    created_at: datetime


class ClaimResponse(BaseModel):
    jobs: list[ClaimedJob]


class CompleteRequest(BaseModel):
    job_id: UUID
    claim_token: str
    success: bool
    error: str | None = None
    result: dict[str, Any] = Field(
        default_factory=dict, description="Family-specific result fields"
    )


class CompleteResult(BaseModel):
    ok: bool
    ignored: bool = False
    reason: str | None = None
    status: str | None = None


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    family: str
    scope: dict[str, Any]
    payload: dict[str, Any]
    status: str
    source: str | None = None
    attempt_count: int
    max_attempts: int
    run_after: datetime
    claim_worker_id: str | None = None
    claimed_at: datetime | None = None
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime


class JobListResponse(BaseModel):
    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Per-family status counts."""

    total_jobs: int
    by_family: dict[str, dict[str, int]]
    pending_ready: dict[str, int]
    processing: int
    failed: int


class ReclaimResponse(BaseModel):
    reclaimed: int
    lease_ttl_s: int


class WakeFamilyState(BaseModel):
    pending_ready: int = 0
    next_run_after: int | None = Field(
        default=None, description="Earliest future run_after in epoch ms"
    )
    pending_total: int = 0


class WakeStateResponse(BaseModel):
    """Aggregate queue readiness pushed to workers."""

    families: dict[str, WakeFamilyState]
    server_now: int = Field(..., description="Server clock in epoch ms")

"""
Job queue API endpoints.

Worker RPCs (claim, complete, enqueue and the wake feed) authenticate with the
worker token; listing, inspection and lease reclaim are operator endpoints.
"""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from guildpass.config.settings import Settings, SettingsDep
from guildpass.infra.database import SessionDep, get_session_factory
from guildpass.v1.core.exceptions import NotFoundError, create_success_response
from guildpass.v1.core.security import Principal, PrincipalDep, WorkerDep, WorkerIdentity
from guildpass.v1.infra.jobs.models import JobStatus
from guildpass.v1.infra.jobs.schemas import (
    ClaimRequest,
    ClaimResponse,
    CompleteRequest,
    EnqueueRequest,
    JobListResponse,
    JobResponse,
    ReclaimResponse,
)
from guildpass.v1.infra.jobs.service import JobService
from guildpass.v1.infra.jobs.wake import wake_event_stream

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/wake", response_model=dict)
async def get_wake_state(
    worker: WorkerIdentity = WorkerDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Current per-family readiness snapshot."""
    state = await JobService(settings).wake_state(session)
    return create_success_response(data=state.model_dump())


@router.get("/wake/stream")
async def stream_wake_state(
    request: Request,
    max_events: int | None = Query(
        default=None, ge=1, description="Close the stream after this many events"
    ),
    worker: WorkerIdentity = WorkerDep,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    settings: Settings = SettingsDep,
) -> StreamingResponse:
    """Server-sent events: a ``wake`` event on every readiness change."""
    return StreamingResponse(
        wake_event_stream(
            session_factory,
            JobService(settings),
            settings.wake_stream_interval_ms,
            request.is_disconnected,
            max_events=max_events,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/reclaim-expired", response_model=dict)
async def reclaim_expired_leases(
    ttl_s: int | None = Query(
        default=None, ge=1, description="Override the configured lease TTL"
    ),
    principal: Principal = PrincipalDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Return jobs whose lease has outlived the TTL to the queue."""
    lease_ttl_s = ttl_s or settings.job_lease_ttl_s
    reclaimed = await JobService(settings).reclaim_expired_leases(session, lease_ttl_s)

    logger.info(
        "Lease reclaim via API",
        extra={
            "reclaimed": reclaimed,
            "lease_ttl_s": lease_ttl_s,
            "operator_id": principal.operator_id,
        },
    )
    return create_success_response(
        data=ReclaimResponse(reclaimed=reclaimed, lease_ttl_s=lease_ttl_s).model_dump()
    )


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    principal: Principal = PrincipalDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get job counts per family and status."""
    stats = await JobService(settings).get_job_stats(session)
    return create_success_response(data=stats.model_dump())


@router.post("/{family}/claim", response_model=dict)
async def claim_jobs(
    family: str,
    request: ClaimRequest,
    worker: WorkerIdentity = WorkerDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Lease due jobs of a family to the calling worker."""
    jobs = await JobService(settings).claim(
        session, family, limit=request.limit, worker_id=request.worker_id
    )
    return create_success_response(
        data=ClaimResponse(jobs=jobs).model_dump(mode="json")
    )


@router.post("/{family}/complete", response_model=dict)
async def complete_job(
    family: str,
    request: CompleteRequest,
    worker: WorkerIdentity = WorkerDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Report the outcome of a leased job."""
    result = await JobService(settings).complete(
        session,
        family,
        job_id=request.job_id,
        claim_token=request.claim_token,
        success=request.success,
        error=request.error,
        result=request.result,
    )
    return create_success_response(data=result.model_dump())


@router.post("/{family}/enqueue", response_model=dict)
async def enqueue_job(
    family: str,
    request: EnqueueRequest,
    worker: WorkerIdentity = WorkerDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Request work on a scope of a family."""
    result = await JobService(settings).enqueue(
        session,
        family,
        scope=request.scope,
        source=request.source,
        payload=request.payload,
        run_after=request.run_after,
    )
    return create_success_response(data=result.model_dump(mode="json"))


@router.get("", response_model=dict)
async def list_jobs(
    family: str | None = Query(default=None, description="Filter by family"),
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    principal: Principal = PrincipalDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List jobs with filtering and pagination."""
    jobs, total = await JobService(settings).list_jobs(
        session,
        family=family,
        statuses=[s.value for s in status] if status else None,
        limit=limit,
        offset=offset,
    )
    response_data = JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )
    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""
    job = await JobService(settings).get_job_by_id(session, job_id)
    if not job:
        raise NotFoundError("Job not found", details={"job_id": str(job_id)})

    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )

from datetime import UTC, datetime, timedelta

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from guildpass.config.settings import Settings, SettingsDep
from guildpass.infra.database import SessionDep
from guildpass.v1.core.exceptions import create_success_response
from guildpass.v1.infra.jobs.models import Job, JobStatus
from guildpass.v1.payments.models import WebhookEvent, WebhookEventStatus

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Job queue and webhook backlog."""

    pending_ready: int = 0
    processing: int = 0
    oldest_lease_age_seconds: int | None = None
    failed_jobs: int = 0
    failed_webhooks: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = SessionDep
):
    """Health check endpoint with database and queue status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)

    queue_health = None
    if db_health.connected:
        queue_health = await _check_queue_health(session)

    health_data = {
        "ok": db_health.connected,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "queue": queue_health.model_dump() if queue_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        response_time_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        await session.rollback()
        return DatabaseHealth(connected=False, error=str(e))


async def _check_queue_health(session: AsyncSession) -> QueueHealth:
    now = datetime.now(UTC)

    counts = dict(
        (
            await session.execute(
                select(Job.status, func.count(Job.id)).group_by(Job.status)
            )
        ).all()
    )

    pending_ready = (
        await session.execute(
            select(func.count(Job.id)).where(
                Job.status == JobStatus.PENDING.value, Job.run_after <= now
            )
        )
    ).scalar() or 0

    oldest_claim = (
        await session.execute(
            select(func.min(Job.claimed_at)).where(
                Job.status == JobStatus.PROCESSING.value
            )
        )
    ).scalar()
    oldest_lease_age = None
    if oldest_claim is not None:
        if oldest_claim.tzinfo is None:
            oldest_claim = oldest_claim.replace(tzinfo=UTC)
        oldest_lease_age = max(0, int((now - oldest_claim) / timedelta(seconds=1)))

    failed_webhooks = (
        await session.execute(
            select(func.count(WebhookEvent.id)).where(
                WebhookEvent.status == WebhookEventStatus.FAILED.value
            )
        )
    ).scalar() or 0

    return QueueHealth(
        pending_ready=pending_ready,
        processing=counts.get(JobStatus.PROCESSING.value, 0),
        oldest_lease_age_seconds=oldest_lease_age,
        failed_jobs=counts.get(JobStatus.FAILED.value, 0),
        failed_webhooks=failed_webhooks,
    )

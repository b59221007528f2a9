"""
Job service: dedup-aware enqueue, atomic claim, claim-validated completion and
lease reclaim for every job family.
"""

import hmac
import logging
import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, desc, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from guildpass.config.settings import Settings
from guildpass.infra.database import utcnow
from guildpass.v1.core.exceptions import NotFoundError
from guildpass.v1.core.registries import job_family_registry
from guildpass.v1.infra.jobs.backoff import next_run_after
from guildpass.v1.infra.jobs.families import JobFamily, JobResultRejected
from guildpass.v1.infra.jobs.models import ACTIVE_STATUSES, Job, JobStatus
from guildpass.v1.infra.jobs.schemas import (
    ClaimedJob,
    CompleteResult,
    EnqueueResult,
    JobStatsResponse,
    WakeFamilyState,
    WakeStateResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_CLAIM_LIMIT = 5
MAX_CLAIM_LIMIT = 20
MAX_ERROR_LENGTH = 2000
LEASE_EXPIRED_ERROR = "lease_expired"


def clamp_claim_limit(limit: int | None) -> int:
    """Claim batch size bounded to 1..20, defaulting to 5."""
    if limit is None:
        return DEFAULT_CLAIM_LIMIT
    return max(1, min(MAX_CLAIM_LIMIT, int(limit)))


def normalize_error(error: str | None) -> str:
    message = (error or "").strip()
    if not message:
        return "unknown_error"
    return message[:MAX_ERROR_LENGTH]


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class JobService:
    """Service for the shared job store."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def family(self, name: str) -> JobFamily:
        """Look up a registered job family or raise NotFoundError."""
        try:
            return job_family_registry.get(name)
        except KeyError:
            raise NotFoundError(
                f"Unknown job family: {name}",
                details={"families": job_family_registry.list()},
            ) from None

    def max_attempts_for(self, family: JobFamily) -> int:
        return family.max_attempts or self.settings.job_max_attempts

    def retry_at(self, family: JobFamily, now: datetime, attempt: int) -> datetime:
        return next_run_after(
            now,
            attempt,
            family.backoff_base_ms or self.settings.job_backoff_base_ms,
            family.backoff_cap_ms or self.settings.job_backoff_cap_ms,
        )

    async def enqueue(
        self,
        session: AsyncSession,
        family_name: str,
        scope: dict,
        source: str | None = None,
        payload: dict | None = None,
        run_after: datetime | None = None,
        now: datetime | None = None,
        commit: bool = True,
        replace_payload: bool = False,
    ) -> EnqueueResult:
        """
        Request work on a scope, collapsing into an outstanding job if one exists.

        Args:
            session: Database session
            family_name: Registered job family
            scope: Family scope fields (the dedup key)
            source: Reason for the request, overwritten on collapse
            payload: Execution inputs merged into an existing job on collapse
            run_after: Earliest eligibility, defaults to now
            now: Clock override
            commit: Commit here, or leave the caller's transaction open
            replace_payload: On collapse, overwrite the payload instead of merging

        Returns:
            The surviving job id and whether the request was deduplicated
        """
        family = self.family(family_name)
        normalized = family.normalize_scope(scope)
        scope_key = family.scope_key(normalized)
        now = now or utcnow()
        requested_run_after = run_after or now

        existing = await self._find_active_job(session, family.name, scope_key)
        if existing is not None:
            return await self._collapse(
                session,
                existing,
                source,
                payload,
                requested_run_after,
                now,
                commit,
                replace_payload,
            )

        job = Job(
            id=uuid.uuid4(),
            family=family.name,
            scope=normalized,
            scope_key=scope_key,
            payload=dict(payload or {}),
            status=JobStatus.PENDING.value,
            source=source,
            attempt_count=0,
            max_attempts=self.max_attempts_for(family),
            run_after=requested_run_after,
            created_at=now,
            updated_at=now,
        )

        try:
            async with session.begin_nested():
                session.add(job)
        except IntegrityError:
            # Another process inserted the active job for this scope first
            existing = await self._find_active_job(session, family.name, scope_key)
            if existing is None:
                raise
            logger.info(
                "Enqueue race resolved by collapse",
                extra={"family": family.name, "job_id": str(existing.id)},
            )
            return await self._collapse(
                session,
                existing,
                source,
                payload,
                requested_run_after,
                now,
                commit,
                replace_payload,
            )

        if commit:
            await session.commit()

        logger.info(
            "Job enqueued",
            extra={
                "job_id": str(job.id),
                "family": family.name,
                "source": source,
                "run_after": requested_run_after.isoformat(),
            },
        )
        return EnqueueResult(job_id=job.id, deduped=False, status=job.status)

    async def _collapse(
        self,
        session: AsyncSession,
        existing: Job,
        source: str | None,
        payload: dict | None,
        requested_run_after: datetime,
        now: datetime,
        commit: bool,
        replace_payload: bool = False,
    ) -> EnqueueResult:
        if source is not None:
            existing.source = source
        if replace_payload and payload is not None:
            existing.payload = dict(payload)
        elif payload:
            existing.payload = {**(existing.payload or {}), **payload}
        if (
            existing.status == JobStatus.PENDING.value
            and requested_run_after < existing.run_after
        ):
            existing.run_after = requested_run_after
        existing.updated_at = now

        if commit:
            await session.commit()
        else:
            await session.flush()

        logger.info(
            "Job deduplicated",
            extra={
                "job_id": str(existing.id),
                "family": existing.family,
                "status": existing.status,
                "source": source,
            },
        )
        return EnqueueResult(job_id=existing.id, deduped=True, status=existing.status)

    async def _find_active_job(
        self, session: AsyncSession, family: str, scope_key: str
    ) -> Job | None:
        """Find the outstanding job for a scope, pending first."""
        result = await session.execute(
            select(Job)
            .where(
                and_(
                    Job.family == family,
                    Job.scope_key == scope_key,
                    Job.status.in_(ACTIVE_STATUSES),
                )
            )
            .order_by(Job.status)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def claim(
        self,
        session: AsyncSession,
        family_name: str,
        limit: int | None = None,
        worker_id: str | None = None,
        now: datetime | None = None,
    ) -> list[ClaimedJob]:
        """
        Lease up to ``limit`` due pending jobs to a worker, oldest-due first.

        Each candidate is taken with a conditional update on ``status='pending'``
        so two concurrent callers can never both win the same row; on
        PostgreSQL the candidate scan also skips rows locked by another claimer.
        """
        family = self.family(family_name)
        limit = clamp_claim_limit(limit)
        now = now or utcnow()
        worker_id = (worker_id or "").strip() or "unknown-worker"

        candidates = await session.execute(
            select(Job.id)
            .where(
                and_(
                    Job.family == family.name,
                    Job.status == JobStatus.PENDING.value,
                    Job.run_after <= now,
                )
            )
            .order_by(Job.run_after, Job.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        candidate_ids = list(candidates.scalars().all())
        if not candidate_ids:
            await session.commit()
            return []

        claimed_ids = await self._lease(session, candidate_ids, worker_id, now)
        await session.commit()

        if not claimed_ids:
            return []

        jobs = await self._load_jobs(session, claimed_ids)

        logger.info(
            "Claimed jobs",
            extra={
                "family": family.name,
                "worker_id": worker_id,
                "job_count": len(jobs),
                "job_ids": [str(job.id) for job in jobs],
            },
        )

        claimed: list[ClaimedJob] = []
        for job in jobs:
            context = await self._enrich(session, family, job)
            claimed.append(
                ClaimedJob(
                    job_id=job.id,
                    family=job.family,
                    claim_token=job.claim_token or "",
                    scope=dict(job.scope or {}),
                    payload=dict(job.payload or {}),
                    context=context,
                    attempt_count=job.attempt_count,
                    max_attempts=job.max_attempts,
                    source=job.source,
                    run_after=job.run_after,
                    created_at=job.created_at,
                )
            )
        return claimed

    async def _lease(
        self,
        session: AsyncSession,
        candidate_ids: Sequence[UUID],
        worker_id: str,
        now: datetime,
    ) -> list[UUID]:
        claimed_ids: list[UUID] = []
        for job_id in candidate_ids:
            result = await session.execute(
                update(Job)
                .where(and_(Job.id == job_id, Job.status == JobStatus.PENDING.value))
                .values(
                    status=JobStatus.PROCESSING.value,
                    claim_token=uuid.uuid4().hex,
                    claim_worker_id=worker_id,
                    claimed_at=now,
                    last_attempt_at=now,
                    attempt_count=Job.attempt_count + 1,
                    last_error=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed_ids.append(job_id)
        return claimed_ids

    async def _load_jobs(self, session: AsyncSession, job_ids: list[UUID]) -> list[Job]:
        result = await session.execute(
            select(Job)
            .where(Job.id.in_(job_ids))
            .order_by(Job.run_after, Job.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _enrich(self, session: AsyncSession, family: JobFamily, job: Job) -> dict:
        if family.enrich is None:
            return {}
        try:
            return await family.enrich(self, session, job)
        except Exception as e:
            # The lease is already committed; hand the job out without context.
            logger.exception(
                "Job enrichment failed",
                extra={"job_id": str(job.id), "family": family.name},
            )
            return {"enrich_error": str(e) or e.__class__.__name__}

    async def complete(
        self,
        session: AsyncSession,
        family_name: str,
        job_id: UUID,
        claim_token: str,
        success: bool,
        error: str | None = None,
        result: dict | None = None,
        now: datetime | None = None,
    ) -> CompleteResult:
        """
        Record the outcome of a leased job.

        Late, duplicate or superseded completions are reported through
        ``reason`` and leave the job untouched.
        """
        family = self.family(family_name)
        now = now or utcnow()

        job = (
            await session.execute(
                select(Job)
                .where(and_(Job.id == job_id, Job.family == family.name))
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()

        if job is None:
            return CompleteResult(ok=False, ignored=True, reason="job_not_found")
        if job.status != JobStatus.PROCESSING.value:
            return CompleteResult(ok=False, ignored=True, reason="job_not_processing")
        if not job.claim_token or not hmac.compare_digest(
            job.claim_token.encode(), (claim_token or "").encode()
        ):
            logger.warning(
                "Stale completion ignored",
                extra={"job_id": str(job.id), "family": family.name},
            )
            return CompleteResult(ok=False, ignored=True, reason="claim_token_mismatch")

        if success:
            self._release(job, now)
            job.status = JobStatus.COMPLETED.value
            job.last_error = None
            await session.flush()
            try:
                if family.on_success is not None:
                    await family.on_success(self, session, job, result or {}, now)
            except JobResultRejected as e:
                error = str(e)
            else:
                await session.commit()
                logger.info(
                    "Job completed",
                    extra={
                        "job_id": str(job.id),
                        "family": family.name,
                        "attempt_count": job.attempt_count,
                    },
                )
                return CompleteResult(ok=True, status=JobStatus.COMPLETED.value)

        message = normalize_error(error)
        self._release(job, now)
        job.last_error = message

        if job.attempts_exhausted():
            job.status = JobStatus.FAILED.value
            if family.on_terminal_failure is not None:
                await family.on_terminal_failure(self, session, job, message, now)
            await session.commit()
            logger.error(
                "Job failed permanently",
                extra={
                    "job_id": str(job.id),
                    "family": family.name,
                    "attempt_count": job.attempt_count,
                    "error": message,
                },
            )
            return CompleteResult(ok=True, status=JobStatus.FAILED.value)

        job.status = JobStatus.PENDING.value
        job.run_after = self.retry_at(family, now, job.attempt_count)
        await session.commit()
        logger.info(
            "Job scheduled for retry",
            extra={
                "job_id": str(job.id),
                "family": family.name,
                "attempt_count": job.attempt_count,
                "run_after": job.run_after.isoformat(),
                "error": message,
            },
        )
        return CompleteResult(ok=True, status=JobStatus.PENDING.value)

    @staticmethod
    def _release(job: Job, now: datetime) -> None:
        job.claim_token = None
        job.claim_worker_id = None
        job.claimed_at = None
        job.updated_at = now

    async def reclaim_expired_leases(
        self, session: AsyncSession, ttl_s: int, now: datetime | None = None
    ) -> int:
        """Return processing jobs whose lease is older than ``ttl_s`` to the queue.

        Jobs with attempts left become pending and immediately eligible; the
        rest fail with ``lease_expired``. A non-positive TTL disables the sweep.
        """
        if ttl_s <= 0:
            return 0
        now = now or utcnow()
        cutoff = now - timedelta(seconds=ttl_s)

        result = await session.execute(
            select(Job)
            .where(
                and_(
                    Job.status == JobStatus.PROCESSING.value,
                    Job.claimed_at < cutoff,
                )
            )
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        expired = list(result.scalars().all())
        if not expired:
            await session.commit()
            return 0

        for job in expired:
            family = self.family(job.family)
            self._release(job, now)
            job.last_error = LEASE_EXPIRED_ERROR
            if job.attempts_exhausted():
                job.status = JobStatus.FAILED.value
                if family.on_terminal_failure is not None:
                    await family.on_terminal_failure(
                        self, session, job, LEASE_EXPIRED_ERROR, now
                    )
            else:
                job.status = JobStatus.PENDING.value
                job.run_after = now

        await session.commit()

        logger.warning(
            "Reclaimed expired leases",
            extra={
                "reclaimed_count": len(expired),
                "lease_ttl_s": ttl_s,
                "job_ids": [str(job.id) for job in expired],
            },
        )
        return len(expired)

    async def get_job_by_id(
        self, session: AsyncSession, job_id: UUID, family: str | None = None
    ) -> Job | None:
        """Get job by ID, optionally restricted to one family."""
        query = select(Job).where(Job.id == job_id)
        if family:
            query = query.where(Job.family == family)
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        session: AsyncSession,
        family: str | None = None,
        statuses: list[str] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List jobs newest first with the unpaginated total."""
        base_query = select(Job)
        if family:
            base_query = base_query.where(Job.family == family)
        if statuses:
            base_query = base_query.where(Job.status.in_(statuses))

        total = (
            await session.execute(
                select(func.count()).select_from(base_query.subquery())
            )
        ).scalar() or 0

        jobs = (
            await session.execute(
                base_query.order_by(desc(Job.created_at)).offset(offset).limit(limit)
            )
        ).scalars()
        return list(jobs.all()), total

    async def get_job_stats(
        self, session: AsyncSession, now: datetime | None = None
    ) -> JobStatsResponse:
        """Status counts per family plus ready backlog."""
        now = now or utcnow()
        by_family: dict[str, dict[str, int]] = {
            name: {} for name in job_family_registry.list()
        }

        rows = await session.execute(
            select(Job.family, Job.status, func.count(Job.id)).group_by(
                Job.family, Job.status
            )
        )
        total = 0
        processing = 0
        failed = 0
        for family, status, count in rows.all():
            by_family.setdefault(family, {})[status] = count
            total += count
            if status == JobStatus.PROCESSING.value:
                processing += count
            elif status == JobStatus.FAILED.value:
                failed += count

        ready_rows = await session.execute(
            select(Job.family, func.count(Job.id))
            .where(
                and_(Job.status == JobStatus.PENDING.value, Job.run_after <= now)
            )
            .group_by(Job.family)
        )
        pending_ready = {name: 0 for name in by_family}
        pending_ready.update(dict(ready_rows.all()))

        return JobStatsResponse(
            total_jobs=total,
            by_family=by_family,
            pending_ready=pending_ready,
            processing=processing,
            failed=failed,
        )

    async def wake_state(
        self, session: AsyncSession, now: datetime | None = None
    ) -> WakeStateResponse:
        """Aggregate readiness of pending work for the worker wake feed."""
        now = now or utcnow()
        families = {name: WakeFamilyState() for name in job_family_registry.list()}
        pending = Job.status == JobStatus.PENDING.value

        totals = await session.execute(
            select(Job.family, func.count(Job.id)).where(pending).group_by(Job.family)
        )
        for family, count in totals.all():
            families.setdefault(family, WakeFamilyState()).pending_total = count

        ready = await session.execute(
            select(Job.family, func.count(Job.id))
            .where(and_(pending, Job.run_after <= now))
            .group_by(Job.family)
        )
        for family, count in ready.all():
            families.setdefault(family, WakeFamilyState()).pending_ready = count

        upcoming = await session.execute(
            select(Job.family, func.min(Job.run_after))
            .where(and_(pending, Job.run_after > now))
            .group_by(Job.family)
        )
        for family, earliest in upcoming.all():
            if earliest is not None:
                families.setdefault(family, WakeFamilyState()).next_run_after = (
                    to_epoch_ms(earliest)
                )

        return WakeStateResponse(families=families, server_now=to_epoch_ms(now))

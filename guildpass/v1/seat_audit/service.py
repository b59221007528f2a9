"""
Seat audit: scheduling of guild member counts, persisting their snapshots and
gating enforcement on them.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from guildpass.config.settings import Settings
from guildpass.infra.database import utcnow
from guildpass.v1.infra.jobs.families import SEAT_AUDIT, JobResultRejected
from guildpass.v1.infra.jobs.models import Job
from guildpass.v1.infra.jobs.schemas import EnqueueResult
from guildpass.v1.infra.jobs.service import JobService
from guildpass.v1.mirror.models import ConnectorMapping
from guildpass.v1.seat_audit.gate import evaluate_seat_gate, snapshot_status
from guildpass.v1.seat_audit.models import SeatSnapshot, ServerConfig, SnapshotStatus
from guildpass.v1.seat_audit.schemas import (
    SeatGateDecision,
    SeatSweepResult,
    SnapshotRefreshResult,
)

logger = logging.getLogger(__name__)

SOURCE_MANUAL_REFRESH = "admin_manual_refresh"
SOURCE_AUTO_RECHECK = "auto_snapshot_recheck"
SOURCE_SCHEDULED_RECHECK = "scheduled_snapshot_recheck"
SOURCE_MISSING_SNAPSHOT = "scheduled_missing_snapshot"

DEFAULT_SWEEP_LIMIT = 100
MAX_SWEEP_LIMIT = 500


def clamp_sweep_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_SWEEP_LIMIT
    return max(1, min(MAX_SWEEP_LIMIT, int(limit)))


def parse_non_negative_int(value: Any) -> int | None:
    """Accept ints and integral floats >= 0; anything else is invalid."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float) and value.is_integer() and value >= 0:
        return int(value)
    return None


def parse_epoch_ms(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return datetime.fromtimestamp(value / 1000, UTC)


class SeatAuditService:
    """Service for seat_audit jobs and snapshots."""

    def __init__(self, settings: Settings, job_service: JobService | None = None):
        self.settings = settings
        self.job_service = job_service or JobService(settings)

    async def get_config(
        self, session: AsyncSession, tenant_key: str, connector_id: str, guild_id: str
    ) -> ServerConfig | None:
        result = await session.execute(
            select(ServerConfig).where(
                and_(
                    ServerConfig.tenant_key == tenant_key,
                    ServerConfig.connector_id == connector_id,
                    ServerConfig.guild_id == guild_id,
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_snapshot(
        self, session: AsyncSession, tenant_key: str, connector_id: str, guild_id: str
    ) -> SeatSnapshot | None:
        result = await session.execute(
            select(SeatSnapshot)
            .where(
                and_(
                    SeatSnapshot.tenant_key == tenant_key,
                    SeatSnapshot.connector_id == connector_id,
                    SeatSnapshot.guild_id == guild_id,
                )
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def target_channel_ids(
        self, session: AsyncSession, tenant_key: str, connector_id: str
    ) -> list[str]:
        """Distinct mirror target channels of a connector, in mapping order."""
        result = await session.execute(
            select(ConnectorMapping.target_channel_id)
            .where(
                and_(
                    ConnectorMapping.tenant_key == tenant_key,
                    ConnectorMapping.connector_id == connector_id,
                )
            )
            .order_by(ConnectorMapping.updated_at)
        )
        seen: list[str] = []
        for channel_id in result.scalars().all():
            channel_id = (channel_id or "").strip()
            if channel_id and channel_id not in seen:
                seen.append(channel_id)
        return seen

    async def request_refresh(
        self,
        session: AsyncSession,
        tenant_key: str,
        connector_id: str,
        guild_id: str,
        now: datetime | None = None,
    ) -> EnqueueResult:
        """Ask for an immediate recount of a guild."""
        return await self.job_service.enqueue(
            session,
            SEAT_AUDIT,
            scope={
                "tenant_key": tenant_key,
                "connector_id": connector_id,
                "guild_id": guild_id,
            },
            source=SOURCE_MANUAL_REFRESH,
            now=now,
        )

    async def enqueue_due(
        self,
        session: AsyncSession,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> SeatSweepResult:
        """
        Schedule audits for guilds that need one.

        First pass: snapshots whose next_check_after has passed, earliest first.
        Second pass, with whatever of the limit remains: enforcement-enabled guilds
        that have never been measured.
        """
        now = now or utcnow()
        limit = clamp_sweep_limit(limit)
        scanned = 0
        enqueued = 0
        deduped = 0

        due = (
            await session.execute(
                select(SeatSnapshot)
                .where(SeatSnapshot.next_check_after <= now)
                .order_by(SeatSnapshot.next_check_after)
                .limit(limit)
            )
        ).scalars().all()

        for snapshot in due:
            scanned += 1
            result = await self.job_service.enqueue(
                session,
                SEAT_AUDIT,
                scope={
                    "tenant_key": snapshot.tenant_key,
                    "connector_id": snapshot.connector_id,
                    "guild_id": snapshot.guild_id,
                },
                source=SOURCE_SCHEDULED_RECHECK,
                now=now,
                commit=False,
            )
            if result.deduped:
                deduped += 1
            else:
                enqueued += 1

        remaining = limit - (enqueued + deduped)
        if remaining > 0:
            missing = (
                await session.execute(
                    select(ServerConfig)
                    .outerjoin(
                        SeatSnapshot,
                        and_(
                            SeatSnapshot.tenant_key == ServerConfig.tenant_key,
                            SeatSnapshot.connector_id == ServerConfig.connector_id,
                            SeatSnapshot.guild_id == ServerConfig.guild_id,
                        ),
                    )
                    .where(
                        and_(
                            ServerConfig.seat_enforcement_enabled.is_(True),
                            SeatSnapshot.id.is_(None),
                        )
                    )
                    .order_by(ServerConfig.created_at)
                    .limit(remaining)
                )
            ).scalars().all()

            for config in missing:
                scanned += 1
                result = await self.job_service.enqueue(
                    session,
                    SEAT_AUDIT,
                    scope={
                        "tenant_key": config.tenant_key,
                        "connector_id": config.connector_id,
                        "guild_id": config.guild_id,
                    },
                    source=SOURCE_MISSING_SNAPSHOT,
                    now=now,
                    commit=False,
                )
                if result.deduped:
                    deduped += 1
                else:
                    enqueued += 1

        await session.commit()

        if enqueued or deduped:
            logger.info(
                "Scheduled seat audits",
                extra={"enqueued": enqueued, "deduped": deduped, "limit": limit},
            )
        return SeatSweepResult(scanned=scanned, enqueued=enqueued, deduped=deduped)

    async def refresh_snapshot_statuses(
        self, session: AsyncSession, now: datetime | None = None
    ) -> SnapshotRefreshResult:
        """Recompute the stored freshness of every snapshot."""
        now = now or utcnow()
        snapshots = (await session.execute(select(SeatSnapshot))).scalars().all()
        updated = 0
        for snapshot in snapshots:
            status = snapshot_status(
                now,
                snapshot.checked_at,
                self.settings.seat_snapshot_fresh_ms,
                self.settings.seat_snapshot_stale_ms,
            )
            if status == snapshot.status:
                continue
            snapshot.status = status
            snapshot.updated_at = now
            updated += 1
        await session.commit()
        return SnapshotRefreshResult(updated=updated)

    async def evaluate_gate(
        self,
        session: AsyncSession,
        tenant_key: str,
        connector_id: str,
        guild_id: str,
        freshness_ms: int | None = None,
        now: datetime | None = None,
    ) -> SeatGateDecision:
        now = now or utcnow()
        config = await self.get_config(session, tenant_key, connector_id, guild_id)
        snapshot = await self.get_snapshot(session, tenant_key, connector_id, guild_id)
        return evaluate_seat_gate(now, config, snapshot, freshness_ms)

    async def context_for(self, session: AsyncSession, scope: dict) -> dict:
        """Execution context a worker needs to audit a guild."""
        config = await self.get_config(
            session, scope["tenant_key"], scope["connector_id"], scope["guild_id"]
        )
        channels = await self.target_channel_ids(
            session, scope["tenant_key"], scope["connector_id"]
        )
        enforcement = bool(config and config.seat_enforcement_enabled)
        if enforcement and not channels:
            logger.warning(
                "Seat enforcement enabled without target channels",
                extra={
                    "tenant_key": scope["tenant_key"],
                    "connector_id": scope["connector_id"],
                    "guild_id": scope["guild_id"],
                },
            )
        return {
            "seat_limit": config.seat_limit if config else None,
            "seat_enforcement_enabled": enforcement,
            "target_channel_ids": channels,
        }

    async def record_result(
        self, session: AsyncSession, job: Job, result: dict, now: datetime
    ) -> SeatSnapshot:
        """Persist a successful count and schedule the next recheck."""
        scope = job.scope
        seats_used = parse_non_negative_int(result.get("seats_used", 0))
        if seats_used is None:
            raise JobResultRejected("invalid_seats_used")

        config = await self.get_config(
            session, scope["tenant_key"], scope["connector_id"], scope["guild_id"]
        )
        reported_limit = result.get("seat_limit")
        if reported_limit is not None:
            seat_limit = parse_non_negative_int(reported_limit)
            if seat_limit is None:
                raise JobResultRejected("invalid_seat_limit")
        else:
            seat_limit = config.seat_limit if config else 0

        checked_at = parse_epoch_ms(result.get("checked_at")) or now
        is_over_limit = seats_used > seat_limit
        interval_ms = (
            self.settings.seat_audit_over_limit_recheck_ms
            if is_over_limit
            else self.settings.seat_audit_recheck_ms
        )
        next_check_after = checked_at + timedelta(milliseconds=interval_ms)
        status = snapshot_status(
            now,
            checked_at,
            self.settings.seat_snapshot_fresh_ms,
            self.settings.seat_snapshot_stale_ms,
        )

        snapshot = await self.get_snapshot(
            session, scope["tenant_key"], scope["connector_id"], scope["guild_id"]
        )
        if snapshot is None:
            snapshot = SeatSnapshot(
                tenant_key=scope["tenant_key"],
                connector_id=scope["connector_id"],
                guild_id=scope["guild_id"],
            )
            session.add(snapshot)
        snapshot.seats_used = seats_used
        snapshot.seat_limit = seat_limit
        snapshot.is_over_limit = is_over_limit
        snapshot.status = status
        snapshot.checked_at = checked_at
        snapshot.next_check_after = next_check_after
        snapshot.last_error = None
        snapshot.updated_at = now

        await self.job_service.enqueue(
            session,
            SEAT_AUDIT,
            scope=scope,
            source=SOURCE_AUTO_RECHECK,
            run_after=next_check_after,
            now=now,
            commit=False,
        )

        logger.info(
            "Seat audit recorded",
            extra={
                "job_id": str(job.id),
                "guild_id": scope["guild_id"],
                "seats_used": seats_used,
                "seat_limit": seat_limit,
                "over_limit": is_over_limit,
            },
        )
        return snapshot

    async def record_terminal_failure(
        self, session: AsyncSession, job: Job, error: str, now: datetime
    ) -> None:
        """Expire the guild's snapshot once its audit has given up."""
        scope = job.scope
        snapshot = await self.get_snapshot(
            session, scope["tenant_key"], scope["connector_id"], scope["guild_id"]
        )
        if snapshot is None:
            return
        snapshot.status = SnapshotStatus.EXPIRED.value
        snapshot.last_error = error
        snapshot.updated_at = now


async def enrich_seat_audit_job(
    job_service: JobService, session: AsyncSession, job: Job
) -> dict:
    return await SeatAuditService(job_service.settings, job_service).context_for(
        session, job.scope
    )


async def complete_seat_audit_job(
    job_service: JobService,
    session: AsyncSession,
    job: Job,
    result: dict,
    now: datetime,
) -> None:
    await SeatAuditService(job_service.settings, job_service).record_result(
        session, job, result, now
    )


async def fail_seat_audit_job(
    job_service: JobService, session: AsyncSession, job: Job, error: str, now: datetime
) -> None:
    await SeatAuditService(job_service.settings, job_service).record_terminal_failure(
        session, job, error, now
    )

"""
Mirror fan-out: one signal_mirror job per target channel of a source message,
plus bookkeeping of the messages posted by workers.
"""

import logging
from datetime import datetime

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from guildpass.config.settings import Settings
from guildpass.infra.database import utcnow
from guildpass.v1.infra.jobs.families import SIGNAL_MIRROR
from guildpass.v1.infra.jobs.models import Job
from guildpass.v1.infra.jobs.service import JobService
from guildpass.v1.mirror.models import ConnectorMapping, MirroredSignal
from guildpass.v1.mirror.schemas import MirrorFanoutResult, MirrorTarget, SignalEvent

logger = logging.getLogger(__name__)

DELETE_EVENT = "delete"


def unique_channel_ids(channel_ids: list[str]) -> list[str]:
    """Trimmed, non-blank channel ids in first-seen order."""
    seen: list[str] = []
    for channel_id in channel_ids:
        normalized = (channel_id or "").strip()
        if normalized and normalized not in seen:
            seen.append(normalized)
    return seen


class MirrorService:
    def __init__(self, settings: Settings, job_service: JobService | None = None):
        self.settings = settings
        self.job_service = job_service or JobService(settings)

    async def mapped_targets(
        self, session: AsyncSession, signal: SignalEvent
    ) -> list[MirrorTarget]:
        result = await session.execute(
            select(ConnectorMapping)
            .where(
                and_(
                    ConnectorMapping.tenant_key == signal.tenant_key,
                    ConnectorMapping.connector_id == signal.connector_id,
                    ConnectorMapping.source_channel_id == signal.source_channel_id,
                )
            )
            .order_by(ConnectorMapping.updated_at)
        )
        return [
            MirrorTarget(
                target_channel_id=mapping.target_channel_id,
                target_guild_id=mapping.target_guild_id,
            )
            for mapping in result.scalars().all()
        ]

    async def enqueue_mirror_jobs_for_signal(
        self,
        session: AsyncSession,
        signal: SignalEvent,
        targets: list[MirrorTarget] | None = None,
        now: datetime | None = None,
    ) -> MirrorFanoutResult:
        """
        Fan a source message event out to its target channels.

        A re-sent event for a target that still has an outstanding job replaces
        that job's content instead of queueing a second post.
        """
        now = now or utcnow()
        if targets is None:
            targets = signal.targets
        if targets is None:
            targets = await self.mapped_targets(session, signal)

        channel_ids = unique_channel_ids([t.target_channel_id for t in targets])
        if not channel_ids:
            logger.info(
                "Signal has no mirror targets",
                extra={
                    "tenant_key": signal.tenant_key,
                    "connector_id": signal.connector_id,
                    "source_message_id": signal.source_message_id,
                },
            )
            return MirrorFanoutResult(skipped=1)

        guild_by_channel = {
            t.target_channel_id.strip(): (t.target_guild_id or "").strip() or None
            for t in targets
        }

        outcome = MirrorFanoutResult()
        for channel_id in channel_ids:
            payload = {
                "source_channel_id": signal.source_channel_id,
                "source_guild_id": signal.source_guild_id,
                "target_guild_id": guild_by_channel.get(channel_id),
                "content": signal.content,
                "attachments": [a.model_dump() for a in signal.attachments],
                "source_created_at": signal.source_created_at,
                "source_edited_at": signal.source_edited_at,
                "source_deleted_at": signal.source_deleted_at,
            }
            result = await self.job_service.enqueue(
                session,
                SIGNAL_MIRROR,
                scope={
                    "tenant_key": signal.tenant_key,
                    "connector_id": signal.connector_id,
                    "source_message_id": signal.source_message_id,
                    "target_channel_id": channel_id,
                    "event_type": signal.event_type,
                },
                source=f"signal_{signal.event_type}",
                payload=payload,
                now=now,
                commit=False,
                replace_payload=True,
            )
            if result.deduped:
                outcome.deduped += 1
            else:
                outcome.enqueued += 1

        await session.commit()
        return outcome

    async def get_mirrored_signal(
        self,
        session: AsyncSession,
        tenant_key: str,
        connector_id: str,
        source_message_id: str,
        target_channel_id: str,
    ) -> MirroredSignal | None:
        result = await session.execute(
            select(MirroredSignal).where(
                and_(
                    MirroredSignal.tenant_key == tenant_key,
                    MirroredSignal.connector_id == connector_id,
                    MirroredSignal.source_message_id == source_message_id,
                    MirroredSignal.target_channel_id == target_channel_id,
                )
            )
        )
        return result.scalar_one_or_none()

    async def record_result(
        self, session: AsyncSession, job: Job, result: dict, now: datetime
    ) -> MirroredSignal | None:
        scope = job.scope
        mirrored_message_id = str(result.get("mirrored_message_id") or "").strip()
        mirrored_guild_id = str(result.get("mirrored_guild_id") or "").strip()
        extra_ids = result.get("mirrored_extra_message_ids")
        deleted_at = now if scope["event_type"] == DELETE_EVENT else None

        mirror = await self.get_mirrored_signal(
            session,
            scope["tenant_key"],
            scope["connector_id"],
            scope["source_message_id"],
            scope["target_channel_id"],
        )
        if mirror is not None:
            mirror.mirrored_message_id = (
                mirrored_message_id or mirror.mirrored_message_id
            )
            mirror.mirrored_guild_id = mirrored_guild_id or mirror.mirrored_guild_id
            if isinstance(extra_ids, list):
                mirror.mirrored_extra_message_ids = [str(i) for i in extra_ids]
            mirror.last_mirrored_at = now
            mirror.deleted_at = deleted_at
        elif mirrored_message_id:
            mirror = MirroredSignal(
                tenant_key=scope["tenant_key"],
                connector_id=scope["connector_id"],
                source_message_id=scope["source_message_id"],
                target_channel_id=scope["target_channel_id"],
                mirrored_message_id=mirrored_message_id,
                mirrored_extra_message_ids=(
                    [str(i) for i in extra_ids] if isinstance(extra_ids, list) else None
                ),
                mirrored_guild_id=mirrored_guild_id or None,
                last_mirrored_at=now,
                deleted_at=deleted_at,
            )
            session.add(mirror)

        logger.info(
            "Mirror job completed",
            extra={
                "job_id": str(job.id),
                "event_type": scope["event_type"],
                "source_message_id": scope["source_message_id"],
                "target_channel_id": scope["target_channel_id"],
            },
        )
        return mirror


async def enrich_signal_mirror_job(
    job_service: JobService, session: AsyncSession, job: Job
) -> dict:
    scope = job.scope
    mirror = await MirrorService(job_service.settings, job_service).get_mirrored_signal(
        session,
        scope["tenant_key"],
        scope["connector_id"],
        scope["source_message_id"],
        scope["target_channel_id"],
    )
    return {
        "existing_mirrored_message_id": mirror.mirrored_message_id if mirror else None,
        "existing_mirrored_guild_id": mirror.mirrored_guild_id if mirror else None,
        "existing_mirrored_extra_message_ids": (
            list(mirror.mirrored_extra_message_ids or []) if mirror else []
        ),
    }


async def complete_signal_mirror_job(
    job_service: JobService,
    session: AsyncSession,
    job: Job,
    result: dict,
    now: datetime,
) -> None:
    await MirrorService(job_service.settings, job_service).record_result(
        session, job, result, now
    )

"""
Role sync fan-out: turns a user's subscription state into grant and revoke
jobs for every managed Discord role.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from guildpass.config.settings import Settings
from guildpass.infra.database import utcnow
from guildpass.v1.accounts.models import DiscordLink, Subscription, SubscriptionStatus
from guildpass.v1.infra.jobs.families import ROLE_SYNC
from guildpass.v1.infra.jobs.service import JobService
from guildpass.v1.role_sync.models import TierRoleMapping
from guildpass.v1.role_sync.schemas import RoleSyncFanoutResult, UserResyncResult

logger = logging.getLogger(__name__)

GRANT = "grant"
REVOKE = "revoke"


@dataclass(frozen=True)
class RoleTarget:
    guild_id: str
    role_id: str

    @property
    def key(self) -> str:
        return f"{self.guild_id}:{self.role_id}"


@dataclass
class RoleResolution:
    mapping_source: str
    mapped_tier: str | None = None
    desired: list[RoleTarget] = field(default_factory=list)
    managed: list[RoleTarget] = field(default_factory=list)


@dataclass
class TargetOutcome:
    enqueued: bool
    deduped: bool = False
    reason: str | None = None


def unique_targets(targets: list[RoleTarget]) -> list[RoleTarget]:
    seen: set[str] = set()
    unique: list[RoleTarget] = []
    for target in targets:
        if target.key in seen:
            continue
        seen.add(target.key)
        unique.append(target)
    return unique


class RoleSyncService:
    """Service that enqueues role_sync jobs."""

    def __init__(self, settings: Settings, job_service: JobService | None = None):
        self.settings = settings
        self.job_service = job_service or JobService(settings)

    async def resolve_targets(
        self, session: AsyncSession, status: str, tier: str | None
    ) -> RoleResolution:
        """Work out which roles a subscription should hold and which are managed.

        Enabled tier mappings win; without any, a single legacy guild/role
        from settings is managed; otherwise nothing is.
        """
        mappings = (
            await session.execute(
                select(TierRoleMapping).where(TierRoleMapping.enabled.is_(True))
            )
        ).scalars().all()

        if mappings:
            managed = unique_targets(
                [RoleTarget(row.guild_id, row.role_id) for row in mappings]
            )
            resolution = RoleResolution(mapping_source="tier_config", managed=managed)
            if status != SubscriptionStatus.ACTIVE.value or not tier:
                return resolution
            mapped = next((row for row in mappings if row.tier == tier), None)
            if mapped is not None:
                resolution.desired = [RoleTarget(mapped.guild_id, mapped.role_id)]
                resolution.mapped_tier = mapped.tier
            return resolution

        guild_id = self.settings.legacy_role_guild_id.strip()
        role_id = self.settings.legacy_role_id.strip()
        if guild_id and role_id:
            legacy = RoleTarget(guild_id, role_id)
            return RoleResolution(
                mapping_source="legacy_env",
                desired=[legacy] if status == SubscriptionStatus.ACTIVE.value else [],
                managed=[legacy],
            )

        return RoleResolution(mapping_source="none")

    async def enqueue_for_target(
        self,
        session: AsyncSession,
        user_id: UUID,
        discord_user_id: str,
        target: RoleTarget,
        action: str,
        source: str,
        now: datetime,
    ) -> TargetOutcome:
        if not (discord_user_id or "").strip():
            return TargetOutcome(enqueued=False, reason="invalid_discord_user_id")
        if not target.guild_id.strip() or not target.role_id.strip():
            return TargetOutcome(enqueued=False, reason="not_configured")

        result = await self.job_service.enqueue(
            session,
            ROLE_SYNC,
            scope={
                "user_id": str(user_id),
                "discord_user_id": discord_user_id,
                "guild_id": target.guild_id,
                "role_id": target.role_id,
                "action": action,
            },
            source=source,
            now=now,
            commit=False,
        )
        return TargetOutcome(enqueued=True, deduped=result.deduped)

    async def enqueue_for_subscription(
        self,
        session: AsyncSession,
        user_id: UUID,
        discord_user_id: str,
        status: str,
        tier: str | None,
        source: str,
        now: datetime | None = None,
        commit: bool = True,
    ) -> RoleSyncFanoutResult:
        """Grant the desired roles and revoke every other managed role."""
        now = now or utcnow()
        resolution = await self.resolve_targets(session, status, tier)
        summary = RoleSyncFanoutResult(
            mapping_source=resolution.mapping_source,
            mapped_tier=resolution.mapped_tier,
        )

        if not resolution.managed:
            summary.skipped = 1
            return summary

        desired_keys = {target.key for target in resolution.desired}
        plan = [(target, GRANT) for target in resolution.desired] + [
            (target, REVOKE)
            for target in resolution.managed
            if target.key not in desired_keys
        ]

        for target, action in plan:
            outcome = await self.enqueue_for_target(
                session, user_id, discord_user_id, target, action, source, now
            )
            if not outcome.enqueued:
                summary.skipped += 1
            elif outcome.deduped:
                summary.deduped += 1
            elif action == GRANT:
                summary.granted += 1
            else:
                summary.revoked += 1

        if commit:
            await session.commit()

        logger.info(
            "Role sync fan-out",
            extra={
                "user_id": str(user_id),
                "status": status,
                "source": source,
                **summary.model_dump(),
            },
        )
        return summary

    async def enqueue_for_user(
        self,
        session: AsyncSession,
        user_id: UUID,
        source: str,
        now: datetime | None = None,
        commit: bool = True,
    ) -> UserResyncResult:
        """Fan out role sync for every active Discord link of a user."""
        now = now or utcnow()
        subscription = (
            await session.execute(
                select(Subscription)
                .where(Subscription.user_id == user_id)
                .order_by(desc(Subscription.updated_at))
                .limit(1)
            )
        ).scalar_one_or_none()
        status = (
            subscription.status if subscription else SubscriptionStatus.INACTIVE.value
        )
        tier = subscription.tier if subscription else None

        links = await self.active_links(session, user_id)
        fanouts = [
            await self.enqueue_for_subscription(
                session,
                user_id,
                link.discord_user_id,
                status,
                tier,
                source,
                now=now,
                commit=False,
            )
            for link in links
        ]

        if commit:
            await session.commit()

        return UserResyncResult(
            user_id=str(user_id),
            subscription_status=status,
            links=len(links),
            fanouts=fanouts,
        )

    async def active_links(
        self, session: AsyncSession, user_id: UUID
    ) -> list[DiscordLink]:
        result = await session.execute(
            select(DiscordLink).where(
                and_(DiscordLink.user_id == user_id, DiscordLink.unlinked_at.is_(None))
            )
        )
        return list(result.scalars().all())

"""
Account-side mutations driven by payments: user resolution, access policies,
subscription terms and the fixed-term expiry sweep.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import and_, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from guildpass.config.settings import Settings
from guildpass.infra.database import utcnow
from guildpass.v1.accounts.models import (
    AccessPolicy,
    BillingMode,
    PaymentCustomer,
    Subscription,
    SubscriptionStatus,
    User,
)
from guildpass.v1.role_sync.service import RoleSyncService

logger = logging.getLogger(__name__)

EXPIRY_SOURCE = "subscription_expired_fixed_term"
DEFAULT_EXPIRY_LIMIT = 100
MAX_EXPIRY_LIMIT = 500


@dataclass(frozen=True)
class ResolvedUser:
    user_id: UUID
    email: str | None
    via: str


class SubscriptionExpiryResult(BaseModel):
    expired: int
    role_sync_enqueued: int


class AccountService:
    def __init__(self, settings: Settings, role_sync: RoleSyncService | None = None):
        self.settings = settings
        self.role_sync = role_sync or RoleSyncService(settings)

    async def find_payment_customer(
        self, session: AsyncSession, provider: str, column, value
    ) -> PaymentCustomer | None:
        result = await session.execute(
            select(PaymentCustomer)
            .where(and_(PaymentCustomer.provider == provider, column == value))
            .order_by(desc(PaymentCustomer.updated_at))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_user_by_email(
        self, session: AsyncSession, email: str
    ) -> User | None:
        result = await session.execute(
            select(User)
            .where(func.lower(func.trim(User.email)) == email)
            .order_by(User.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def resolve_user(
        self,
        session: AsyncSession,
        provider: str,
        external_subscription_id: str | None,
        external_customer_id: str | None,
        customer_email: str | None,
    ) -> ResolvedUser | None:
        """First match of subscription id, then customer id, then email."""
        lookups = (
            (
                "payment_subscription_id",
                PaymentCustomer.external_subscription_id,
                external_subscription_id,
            ),
            (
                "payment_customer_id",
                PaymentCustomer.external_customer_id,
                external_customer_id,
            ),
        )
        for via, column, value in lookups:
            if not value:
                continue
            customer = await self.find_payment_customer(session, provider, column, value)
            if customer is None:
                continue
            user = await session.get(User, customer.user_id)
            if user is not None:
                return ResolvedUser(user_id=user.id, email=user.email, via=via)

        if customer_email:
            user = await self.find_user_by_email(session, customer_email)
            if user is not None:
                return ResolvedUser(user_id=user.id, email=customer_email, via="email")

        return None

    async def resolve_access_policy(
        self, session: AsyncSession, product_id: str | None, variant_id: str | None
    ) -> AccessPolicy | None:
        """Enabled policy for the variant, falling back to the product."""
        for scope, external_id in (("variant", variant_id), ("product", product_id)):
            external_id = (external_id or "").strip()
            if not external_id:
                continue
            policy = (
                await session.execute(
                    select(AccessPolicy).where(
                        and_(
                            AccessPolicy.scope == scope,
                            AccessPolicy.external_id == external_id,
                        )
                    )
                )
            ).scalar_one_or_none()
            if policy is not None and policy.enabled:
                return policy
        return None

    async def latest_subscription(
        self, session: AsyncSession, user_id: UUID
    ) -> Subscription | None:
        result = await session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(desc(Subscription.updated_at))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def apply_payment_status(
        self,
        session: AsyncSession,
        user_id: UUID,
        status: SubscriptionStatus,
        policy: AccessPolicy | None,
        product_id: str | None,
        variant_id: str | None,
        source: str,
        now: datetime,
    ) -> Subscription:
        """
        Upsert the user's subscription for a payment lifecycle event.

        Active events take tier and term from the access policy. A fixed-term
        purchase of the same tier and product while still active extends the
        current term; anything else starts a new term now. Other statuses keep
        tier and product and end access immediately.
        """
        existing = await self.latest_subscription(session, user_id)
        subscription = existing or Subscription(user_id=user_id)
        if existing is None:
            session.add(subscription)

        tier = (policy.tier if policy else None) or (existing.tier if existing else None)
        resolved_product = product_id or (existing.product_id if existing else None)
        resolved_variant = variant_id or (existing.variant_id if existing else None)

        if status == SubscriptionStatus.ACTIVE:
            if policy is None:
                raise ValueError("sell_access_policy_missing")
            if policy.billing_mode == BillingMode.FIXED_TERM.value:
                if not policy.duration_days or policy.duration_days <= 0:
                    raise ValueError("duration_days_invalid")
                can_extend = (
                    existing is not None
                    and existing.status == SubscriptionStatus.ACTIVE.value
                    and existing.tier == tier
                    and existing.product_id == resolved_product
                    and existing.ends_at is not None
                    and existing.ends_at > now
                )
                base = existing.ends_at if can_extend else now
                subscription.started_at = (
                    (existing.started_at or now) if can_extend else now
                )
                subscription.ends_at = base + timedelta(days=policy.duration_days)
            else:
                if not (existing and existing.status == SubscriptionStatus.ACTIVE.value):
                    subscription.started_at = now
                subscription.ends_at = None
            subscription.billing_mode = policy.billing_mode
        else:
            subscription.ends_at = now

        subscription.status = status.value
        subscription.tier = tier
        subscription.product_id = resolved_product
        subscription.variant_id = resolved_variant
        subscription.source = source
        subscription.updated_at = now
        await session.flush()
        return subscription

    async def track_payment_customer(
        self,
        session: AsyncSession,
        provider: str,
        user_id: UUID,
        event_id: str,
        external_customer_id: str | None,
        external_subscription_id: str | None,
        customer_email: str | None,
        now: datetime,
    ) -> PaymentCustomer:
        """Remember provider identifiers so later events resolve without email."""
        existing = None
        if external_subscription_id:
            existing = await self.find_payment_customer(
                session,
                provider,
                PaymentCustomer.external_subscription_id,
                external_subscription_id,
            )
        if existing is None and external_customer_id:
            existing = await self.find_payment_customer(
                session, provider, PaymentCustomer.external_customer_id, external_customer_id
            )
        if existing is None:
            existing = await self.find_payment_customer(
                session, provider, PaymentCustomer.user_id, user_id
            )

        customer = existing or PaymentCustomer(provider=provider, user_id=user_id)
        if existing is None:
            session.add(customer)
        customer.user_id = user_id
        customer.external_customer_id = (
            external_customer_id or customer.external_customer_id
        )
        customer.external_subscription_id = (
            external_subscription_id or customer.external_subscription_id
        )
        customer.customer_email = customer_email or customer.customer_email
        customer.last_event_id = event_id
        customer.updated_at = now
        await session.flush()
        return customer

    async def expire_fixed_term_subscriptions(
        self,
        session: AsyncSession,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> SubscriptionExpiryResult:
        """Deactivate fixed-term subscriptions past their end and revoke roles."""
        now = now or utcnow()
        limit = max(1, min(MAX_EXPIRY_LIMIT, limit or DEFAULT_EXPIRY_LIMIT))

        candidates = (
            await session.execute(
                select(Subscription)
                .where(
                    and_(
                        Subscription.status == SubscriptionStatus.ACTIVE.value,
                        Subscription.billing_mode == BillingMode.FIXED_TERM.value,
                        Subscription.ends_at.is_not(None),
                        Subscription.ends_at <= now,
                    )
                )
                .order_by(Subscription.ends_at)
                .limit(limit)
            )
        ).scalars().all()

        expired = 0
        enqueued = 0
        for subscription in candidates:
            subscription.status = SubscriptionStatus.INACTIVE.value
            subscription.updated_at = now
            expired += 1

            for link in await self.role_sync.active_links(session, subscription.user_id):
                fanout = await self.role_sync.enqueue_for_subscription(
                    session,
                    subscription.user_id,
                    link.discord_user_id,
                    SubscriptionStatus.INACTIVE.value,
                    subscription.tier,
                    EXPIRY_SOURCE,
                    now=now,
                    commit=False,
                )
                enqueued += fanout.granted + fanout.revoked

        await session.commit()

        if expired:
            logger.info(
                "Fixed-term subscriptions expired",
                extra={"expired": expired, "role_sync_enqueued": enqueued},
            )
        return SubscriptionExpiryResult(expired=expired, role_sync_enqueued=enqueued)

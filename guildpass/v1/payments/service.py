"""
Payment webhook pipeline.

Phase 1 records each delivered event exactly once, keyed by provider and event
id. Phase 2 applies the event to accounts and can be re-run for failed events
without re-admitting them.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import and_, desc, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from guildpass.config.settings import Settings
from guildpass.infra.database import utcnow
from guildpass.v1.accounts.models import SubscriptionStatus
from guildpass.v1.accounts.service import AccountService
from guildpass.v1.core.exceptions import NotFoundError
from guildpass.v1.payments.models import WebhookEvent, WebhookEventStatus
from guildpass.v1.payments.projection import WebhookProjection, project_payload
from guildpass.v1.payments.schemas import RecordResult, WebhookProcessResult
from guildpass.v1.role_sync.service import RoleSyncService

logger = logging.getLogger(__name__)

PROVIDER = "sellapp"
DEFAULT_FAILURE_LIMIT = 50
MAX_FAILURE_LIMIT = 200


class WebhookProcessingError(Exception):
    """A processing attempt could not be applied; the event stays replayable."""


class WebhookService:
    """Service for recording and processing payment webhook events."""

    def __init__(
        self,
        settings: Settings,
        accounts: AccountService | None = None,
        provider: str = PROVIDER,
    ):
        self.settings = settings
        self.provider = provider
        self.role_sync = RoleSyncService(settings)
        self.accounts = accounts or AccountService(settings, self.role_sync)

    async def get_event(self, session: AsyncSession, event_id: str) -> WebhookEvent | None:
        result = await session.execute(
            select(WebhookEvent)
            .where(
                and_(
                    WebhookEvent.provider == self.provider,
                    WebhookEvent.event_id == event_id,
                )
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def record_event(
        self,
        session: AsyncSession,
        event_id: str,
        payload: Any,
        body_hash: str | None = None,
        now: datetime | None = None,
    ) -> RecordResult:
        """
        Phase 1: insert the event once.

        A redelivery hits the unique ``(provider, event_id)`` key and reports
        the stored row instead of failing.
        """
        now = now or utcnow()
        existing = await self.get_event(session, event_id)
        if existing is None:
            projection = project_payload(payload)
            event = WebhookEvent(
                provider=self.provider,
                event_id=event_id,
                event_type=projection.event_type,
                payload=payload,
                payload_hash=body_hash,
                customer_email=projection.customer_email,
                external_customer_id=projection.external_customer_id,
                external_subscription_id=projection.external_subscription_id,
                status=WebhookEventStatus.RECEIVED.value,
                attempt_count=0,
                received_at=now,
            )
            try:
                async with session.begin_nested():
                    session.add(event)
            except IntegrityError:
                # A concurrent delivery of the same event recorded it first
                existing = await self.get_event(session, event_id)
                if existing is None:
                    raise
            else:
                await session.commit()
                logger.info(
                    "Webhook event recorded",
                    extra={
                        "provider": self.provider,
                        "event_id": event_id,
                        "event_type": projection.event_type,
                    },
                )
                return RecordResult(
                    created=True, status=event.status, attempt_count=0
                )

        if body_hash and existing.payload_hash and existing.payload_hash != body_hash:
            logger.warning(
                "Webhook payload hash mismatch",
                extra={"provider": self.provider, "event_id": event_id},
            )
        await session.commit()
        return RecordResult(
            created=False,
            status=existing.status,
            attempt_count=existing.attempt_count,
        )

    async def ingest(
        self,
        session: AsyncSession,
        event_id: str,
        payload: Any,
        body_hash: str | None = None,
        now: datetime | None = None,
    ) -> WebhookProcessResult:
        """Record an admitted delivery and process it unless already processed."""
        recorded = await self.record_event(session, event_id, payload, body_hash, now)
        if not recorded.created and recorded.status == WebhookEventStatus.PROCESSED.value:
            logger.info(
                "Webhook event deduplicated",
                extra={"provider": self.provider, "event_id": event_id},
            )
            return WebhookProcessResult(
                ok=True,
                event_id=event_id,
                deduped=True,
                status=WebhookEventStatus.PROCESSED.value,
            )
        return await self.process_event(session, event_id, now)

    async def process_event(
        self, session: AsyncSession, event_id: str, now: datetime | None = None
    ) -> WebhookProcessResult:
        """
        Phase 2: apply a recorded event to the customer's account.

        Failures are stored on the event with the attempt count and returned as
        ``processing_failed``; they never propagate.
        """
        now = now or utcnow()
        event = await self.get_event(session, event_id)
        if event is None:
            raise NotFoundError(
                "webhook_event_not_found",
                details={"provider": self.provider, "event_id": event_id},
            )

        projection = project_payload(event.payload)
        if event.status == WebhookEventStatus.PROCESSED.value:
            return WebhookProcessResult(
                ok=True,
                event_id=event_id,
                deduped=True,
                status=event.status,
                subscription_status=projection.subscription_status.value,
            )

        # The attempt is claimed on the count this caller read. The claim and
        # the work share one transaction, so the row stays locked until the
        # outcome commits and an overlapping replay or redelivery matches
        # nothing.
        seen = event.attempt_count
        claim = await session.execute(
            update(WebhookEvent)
            .where(
                and_(
                    WebhookEvent.id == event.id,
                    WebhookEvent.status != WebhookEventStatus.PROCESSED.value,
                    WebhookEvent.attempt_count == seen,
                )
            )
            .values(
                attempt_count=seen + 1,
                last_attempt_at=now,
                status=WebhookEventStatus.RECEIVED.value,
                error=None,
            )
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount != 1:
            await session.rollback()
            current = await self.get_event(session, event_id)
            logger.info(
                "Webhook event attempt already claimed",
                extra={"provider": self.provider, "event_id": event_id},
            )
            return WebhookProcessResult(
                ok=True,
                event_id=event_id,
                deduped=True,
                status=current.status if current is not None else None,
                subscription_status=projection.subscription_status.value,
            )
        await session.refresh(event)
        attempt = event.attempt_count

        try:
            result = await self._apply(session, event, projection, now)
        except Exception as e:
            await session.rollback()
            message = str(e) or e.__class__.__name__
            await self._mark_failed(session, event_id, projection, message, now)
            logger.error(
                "Webhook processing failed",
                extra={
                    "provider": self.provider,
                    "event_id": event_id,
                    "attempt_count": attempt,
                    "error": message,
                },
            )
            return WebhookProcessResult(
                ok=False,
                event_id=event_id,
                status=WebhookEventStatus.FAILED.value,
                error_code="processing_failed",
                error=message,
            )

        logger.info(
            "Webhook event processed",
            extra={
                "provider": self.provider,
                "event_id": event_id,
                "attempt_count": attempt,
                "subscription_status": result.subscription_status,
                "resolved_via": result.resolved_via,
            },
        )
        return result

    async def _apply(
        self,
        session: AsyncSession,
        event: WebhookEvent,
        projection: WebhookProjection,
        now: datetime,
    ) -> WebhookProcessResult:
        resolved = await self.accounts.resolve_user(
            session,
            self.provider,
            projection.external_subscription_id,
            projection.external_customer_id,
            projection.customer_email,
        )
        if resolved is None:
            raise WebhookProcessingError(
                "user_not_found:"
                f"customer={projection.external_customer_id or 'none'} "
                f"subscription={projection.external_subscription_id or 'none'} "
                f"email={projection.customer_email or 'none'}"
            )

        policy = await self.accounts.resolve_access_policy(
            session, projection.product_id, projection.variant_id
        )
        if projection.subscription_status == SubscriptionStatus.ACTIVE and policy is None:
            raise WebhookProcessingError(
                "sell_access_policy_missing:"
                f"product={projection.product_id or 'none'} "
                f"variant={projection.variant_id or 'none'}"
            )

        subscription = await self.accounts.apply_payment_status(
            session,
            resolved.user_id,
            projection.subscription_status,
            policy,
            projection.product_id,
            projection.variant_id,
            source=self.provider,
            now=now,
        )

        source = f"payment_{projection.event_type}"
        for link in await self.role_sync.active_links(session, resolved.user_id):
            fanout = await self.role_sync.enqueue_for_subscription(
                session,
                resolved.user_id,
                link.discord_user_id,
                subscription.status,
                subscription.tier,
                source,
                now=now,
                commit=False,
            )
            if fanout.mapping_source == "none":
                logger.warning(
                    "Role sync not configured; no jobs queued",
                    extra={
                        "user_id": str(resolved.user_id),
                        "discord_user_id": link.discord_user_id,
                    },
                )

        await self.accounts.track_payment_customer(
            session,
            self.provider,
            resolved.user_id,
            event.event_id,
            projection.external_customer_id,
            projection.external_subscription_id,
            projection.customer_email,
            now,
        )

        event.event_type = projection.event_type
        event.customer_email = projection.customer_email
        event.external_customer_id = projection.external_customer_id
        event.external_subscription_id = projection.external_subscription_id
        event.resolved_user_id = resolved.user_id
        event.resolved_via = resolved.via
        event.status = WebhookEventStatus.PROCESSED.value
        event.processed_at = now
        event.last_attempt_at = now
        event.error = None
        await session.commit()

        return WebhookProcessResult(
            ok=True,
            event_id=event.event_id,
            status=event.status,
            subscription_status=subscription.status,
            user_id=resolved.user_id,
            resolved_via=resolved.via,
        )

    async def _mark_failed(
        self,
        session: AsyncSession,
        event_id: str,
        projection: WebhookProjection,
        message: str,
        now: datetime,
    ) -> None:
        # The rollback dropped the claimed attempt, so it is counted here
        await session.execute(
            update(WebhookEvent)
            .where(
                and_(
                    WebhookEvent.provider == self.provider,
                    WebhookEvent.event_id == event_id,
                    WebhookEvent.status != WebhookEventStatus.PROCESSED.value,
                )
            )
            .values(
                attempt_count=WebhookEvent.attempt_count + 1,
                customer_email=projection.customer_email,
                external_customer_id=projection.external_customer_id,
                external_subscription_id=projection.external_subscription_id,
                status=WebhookEventStatus.FAILED.value,
                error=message,
                last_attempt_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    async def replay(
        self, session: AsyncSession, event_id: str, now: datetime | None = None
    ) -> WebhookProcessResult:
        """Re-run phase 2 for a stored event."""
        logger.info(
            "Webhook replay requested",
            extra={"provider": self.provider, "event_id": event_id},
        )
        return await self.process_event(session, event_id, now)

    async def list_failures(
        self, session: AsyncSession, limit: int | None = None
    ) -> list[WebhookEvent]:
        """Events that still need attention, newest first."""
        limit = max(1, min(MAX_FAILURE_LIMIT, limit or DEFAULT_FAILURE_LIMIT))
        result = await session.execute(
            select(WebhookEvent)
            .where(
                and_(
                    WebhookEvent.provider == self.provider,
                    WebhookEvent.status.in_(
                        [
                            WebhookEventStatus.FAILED.value,
                            WebhookEventStatus.RECEIVED.value,
                        ]
                    ),
                )
            )
            .order_by(desc(WebhookEvent.received_at))
            .limit(limit)
        )
        return list(result.scalars().all())

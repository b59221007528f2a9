from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, Index, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from guildpass.infra.database import Base, UTCDateTime, utcnow


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookEvent(Base):
    """
    One externally delivered payment event.

    ``(provider, event_id)`` is unique; the insert conflict on redelivery is
    what makes recording idempotent. Rows are never deleted.
    """

    __tablename__ = "webhook_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    event_id: Mapped[str] = mapped_column(Text, nullable=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False, default="unknown")
    payload: Mapped[Any] = mapped_column(JSON, nullable=False)
    payload_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_customer_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_subscription_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_user_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    resolved_via: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=WebhookEventStatus.RECEIVED.value
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
        CheckConstraint(
            "status IN ('received', 'processed', 'failed')",
            name="ck_webhook_events_status",
        ),
        Index("ix_webhook_events_provider_status", "provider", "status", "received_at"),
    )

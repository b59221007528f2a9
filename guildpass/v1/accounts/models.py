"""
Customer accounts: users, their Discord links, subscriptions and the payment
provider records used to resolve webhook events back to a user.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from guildpass.infra.database import Base, UTCDateTime, utcnow


class SubscriptionTier(str, Enum):
    BASIC = "basic"
    ADVANCED = "advanced"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELED = "canceled"
    PAST_DUE = "past_due"


class BillingMode(str, Enum):
    RECURRING = "recurring"
    FIXED_TERM = "fixed_term"


class User(Base):
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    email: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )


class DiscordLink(Base):
    """A user's linked Discord account; ``unlinked_at`` marks a revoked link."""

    __tablename__ = "discord_links"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    discord_user_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    username: Mapped[str | None] = mapped_column(Text, nullable=True)
    linked_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    unlinked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tier: Mapped[str | None] = mapped_column(Text, nullable=True)
    billing_mode: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=SubscriptionStatus.INACTIVE.value
    )
    product_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    variant_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    source: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("ix_subscriptions_status_ends_at", "status", "ends_at"),
    )


class PaymentCustomer(Base):
    """Provider-side identifiers remembered for future webhook resolution."""

    __tablename__ = "payment_customers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    external_customer_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_subscription_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_event_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("provider", "user_id", name="uq_payment_customers_user"),
        Index(
            "ix_payment_customers_customer",
            "provider",
            "external_customer_id",
        ),
        Index(
            "ix_payment_customers_subscription",
            "provider",
            "external_subscription_id",
        ),
    )


class AccessPolicy(Base):
    """Maps a sold product or variant to the tier and term it grants."""

    __tablename__ = "access_policies"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    scope: Mapped[str] = mapped_column(Text, nullable=False, comment="product|variant")
    external_id: Mapped[str] = mapped_column(Text, nullable=False)
    tier: Mapped[str] = mapped_column(Text, nullable=False)
    billing_mode: Mapped[str] = mapped_column(Text, nullable=False)
    duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("scope", "external_id", name="uq_access_policies_scope"),
    )

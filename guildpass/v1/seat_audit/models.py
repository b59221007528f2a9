from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Boolean, Index, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from guildpass.infra.database import Base, UTCDateTime, utcnow


class SnapshotStatus(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    EXPIRED = "expired"


class ServerConfig(Base):
    """Seat limit and enforcement switch for one guild of a connector."""

    __tablename__ = "server_configs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_key: Mapped[str] = mapped_column(Text, nullable=False)
    connector_id: Mapped[str] = mapped_column(Text, nullable=False)
    guild_id: Mapped[str] = mapped_column(Text, nullable=False)
    seat_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    seat_enforcement_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_key", "connector_id", "guild_id", name="uq_server_configs_guild"
        ),
    )


class SeatSnapshot(Base):
    """Latest measured seat usage of a guild; one row per seat-audit scope."""

    __tablename__ = "seat_snapshots"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_key: Mapped[str] = mapped_column(Text, nullable=False)
    connector_id: Mapped[str] = mapped_column(Text, nullable=False)
    guild_id: Mapped[str] = mapped_column(Text, nullable=False)
    seats_used: Mapped[int] = mapped_column(Integer, nullable=False)
    seat_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    is_over_limit: Mapped[bool] = mapped_column(Boolean, nullable=False)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, comment="fresh|stale|expired"
    )
    checked_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    next_check_after: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_key", "connector_id", "guild_id", name="uq_seat_snapshots_guild"
        ),
        Index("ix_seat_snapshots_status_next_check", "status", "next_check_after"),
    )

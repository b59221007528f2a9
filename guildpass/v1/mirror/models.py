"""
Signal mirroring: which source channels feed which target channels, and the
messages already posted for each source message.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Index, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from guildpass.infra.database import Base, UTCDateTime, utcnow


class ConnectorMapping(Base):
    __tablename__ = "connector_mappings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_key: Mapped[str] = mapped_column(Text, nullable=False)
    connector_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_channel_id: Mapped[str] = mapped_column(Text, nullable=False)
    target_channel_id: Mapped[str] = mapped_column(Text, nullable=False)
    target_guild_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        Index(
            "ix_connector_mappings_source",
            "tenant_key",
            "connector_id",
            "source_channel_id",
        ),
    )


class MirroredSignal(Base):
    """The message a worker posted in a target channel for a source message."""

    __tablename__ = "mirrored_signals"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_key: Mapped[str] = mapped_column(Text, nullable=False)
    connector_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_message_id: Mapped[str] = mapped_column(Text, nullable=False)
    target_channel_id: Mapped[str] = mapped_column(Text, nullable=False)
    mirrored_message_id: Mapped[str] = mapped_column(Text, nullable=False)
    mirrored_extra_message_ids: Mapped[list[Any] | None] = mapped_column(
        JSON, nullable=True
    )
    mirrored_guild_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_mirrored_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "tenant_key",
            "connector_id",
            "source_message_id",
            "target_channel_id",
            name="uq_mirrored_signals_source_target",
        ),
    )

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Boolean, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from guildpass.infra.database import Base, UTCDateTime, utcnow


class TierRoleMapping(Base):
    """The Discord role granted to holders of a subscription tier."""

    __tablename__ = "tier_role_mappings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tier: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    guild_id: Mapped[str] = mapped_column(Text, nullable=False)
    role_id: Mapped[str] = mapped_column(Text, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

"""
Job store models shared by every job family.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, Index, Integer, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from guildpass.infra.database import Base, UTCDateTime, utcnow


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


class Job(Base):
    """
    A unit of queued work for one job family.

    Lifecycle guarantees:
    - claim_token is set exactly while status is processing
    - at most one pending/processing row per (family, scope_key)
    - attempt_count grows by one per claim and never decreases
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    family: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job family identifier"
    )
    scope: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Scope fields of the target"
    )
    scope_key: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Canonical dedup key built from scope"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Execution inputs that are not part of the scope",
    )

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="Job status: pending|processing|completed|failed",
    )
    source: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Reason the job was (re)requested"
    )
    attempt_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Claims made so far"
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=8, comment="Claims allowed before failing"
    )
    run_after: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        comment="Earliest time the job may be claimed",
    )

    # Lease
    claim_token: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Proof of lease ownership"
    )
    claim_worker_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker holding the lease"
    )
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last failure message"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="jobs_status_check",
        ),
        CheckConstraint(
            "(claim_token IS NULL) = (status <> 'processing')",
            name="jobs_claim_token_check",
        ),
        Index("ix_jobs_family_status_run_after", "family", "status", "run_after"),
        Index("ix_jobs_family_scope_status", "family", "scope_key", "status"),
        Index(
            "ix_jobs_scope_active",
            "family",
            "scope_key",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
    )

    def attempts_exhausted(self) -> bool:
        """Check if another failure would make the job terminal."""
        return self.attempt_count >= self.max_attempts

"""create job queue, seat audit, mirror and payment tables

Revision ID: 6a1f3c9d2b7e
Revises:
Create Date: 2026-10-19 09:12:40.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "6a1f3c9d2b7e"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str, nullable: bool = False, **kwargs) -> sa.Column:
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        nullable=nullable,
        server_default=None if nullable else sa.func.now(),
        **kwargs,
    )


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("family", sa.Text, nullable=False, comment="Job family identifier"),
        sa.Column(
            "scope", sa.JSON, nullable=False, comment="Scope fields of the target"
        ),
        sa.Column(
            "scope_key",
            sa.Text,
            nullable=False,
            comment="Canonical dedup key built from scope",
        ),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            comment="Execution inputs that are not part of the scope",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="Job status: pending|processing|completed|failed",
        ),
        sa.Column("source", sa.Text, nullable=True),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="8"),
        _timestamp("run_after", comment="Earliest time the job may be claimed"),
        # Lease
        sa.Column("claim_token", sa.Text, nullable=True),
        sa.Column("claim_worker_id", sa.Text, nullable=True),
        _timestamp("claimed_at", nullable=True),
        _timestamp("last_attempt_at", nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint(
            "(claim_token IS NULL) = (status <> 'processing')",
            name="jobs_claim_token_check",
        ),
    )
    op.create_index(
        "ix_jobs_family_status_run_after", "jobs", ["family", "status", "run_after"]
    )
    op.create_index(
        "ix_jobs_family_scope_status", "jobs", ["family", "scope_key", "status"]
    )
    # At most one outstanding job per family scope
    op.create_index(
        "ix_jobs_scope_active",
        "jobs",
        ["family", "scope_key"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.Text, nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "discord_links",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("discord_user_id", sa.Text, nullable=False),
        sa.Column("username", sa.Text, nullable=True),
        _timestamp("linked_at"),
        _timestamp("unlinked_at", nullable=True),
    )
    op.create_index("ix_discord_links_user_id", "discord_links", ["user_id"])
    op.create_index(
        "ix_discord_links_discord_user_id", "discord_links", ["discord_user_id"]
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tier", sa.Text, nullable=True),
        sa.Column("billing_mode", sa.Text, nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="inactive"),
        sa.Column("product_id", sa.Text, nullable=True),
        sa.Column("variant_id", sa.Text, nullable=True),
        _timestamp("started_at", nullable=True),
        _timestamp("ends_at", nullable=True),
        sa.Column("source", sa.Text, nullable=True),
        _timestamp("updated_at"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index(
        "ix_subscriptions_status_ends_at", "subscriptions", ["status", "ends_at"]
    )

    op.create_table(
        "payment_customers",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.Text, nullable=False),
        sa.Column(
            "user_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_customer_id", sa.Text, nullable=True),
        sa.Column("external_subscription_id", sa.Text, nullable=True),
        sa.Column("customer_email", sa.Text, nullable=True),
        sa.Column("last_event_id", sa.Text, nullable=True),
        _timestamp("updated_at"),
        sa.UniqueConstraint("provider", "user_id", name="uq_payment_customers_user"),
    )
    op.create_index(
        "ix_payment_customers_customer",
        "payment_customers",
        ["provider", "external_customer_id"],
    )
    op.create_index(
        "ix_payment_customers_subscription",
        "payment_customers",
        ["provider", "external_subscription_id"],
    )

    op.create_table(
        "access_policies",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("scope", sa.Text, nullable=False, comment="product|variant"),
        sa.Column("external_id", sa.Text, nullable=False),
        sa.Column("tier", sa.Text, nullable=False),
        sa.Column("billing_mode", sa.Text, nullable=False),
        sa.Column("duration_days", sa.Integer, nullable=True),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        _timestamp("updated_at"),
        sa.UniqueConstraint("scope", "external_id", name="uq_access_policies_scope"),
    )

    op.create_table(
        "tier_role_mappings",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("tier", sa.Text, nullable=False, unique=True),
        sa.Column("guild_id", sa.Text, nullable=False),
        sa.Column("role_id", sa.Text, nullable=False),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        _timestamp("updated_at"),
    )

    op.create_table(
        "server_configs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_key", sa.Text, nullable=False),
        sa.Column("connector_id", sa.Text, nullable=False),
        sa.Column("guild_id", sa.Text, nullable=False),
        sa.Column("seat_limit", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "seat_enforcement_enabled",
            sa.Boolean,
            nullable=False,
            server_default=sa.false(),
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint(
            "tenant_key", "connector_id", "guild_id", name="uq_server_configs_guild"
        ),
    )

    op.create_table(
        "seat_snapshots",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_key", sa.Text, nullable=False),
        sa.Column("connector_id", sa.Text, nullable=False),
        sa.Column("guild_id", sa.Text, nullable=False),
        sa.Column("seats_used", sa.Integer, nullable=False),
        sa.Column("seat_limit", sa.Integer, nullable=False),
        sa.Column("is_over_limit", sa.Boolean, nullable=False),
        sa.Column("status", sa.Text, nullable=False, comment="fresh|stale|expired"),
        _timestamp("checked_at"),
        _timestamp("next_check_after"),
        sa.Column("last_error", sa.Text, nullable=True),
        _timestamp("updated_at"),
        sa.UniqueConstraint(
            "tenant_key", "connector_id", "guild_id", name="uq_seat_snapshots_guild"
        ),
    )
    op.create_index(
        "ix_seat_snapshots_status_next_check",
        "seat_snapshots",
        ["status", "next_check_after"],
    )

    op.create_table(
        "connector_mappings",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_key", sa.Text, nullable=False),
        sa.Column("connector_id", sa.Text, nullable=False),
        sa.Column("source_channel_id", sa.Text, nullable=False),
        sa.Column("target_channel_id", sa.Text, nullable=False),
        sa.Column("target_guild_id", sa.Text, nullable=True),
        _timestamp("updated_at"),
    )
    op.create_index(
        "ix_connector_mappings_source",
        "connector_mappings",
        ["tenant_key", "connector_id", "source_channel_id"],
    )

    op.create_table(
        "mirrored_signals",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_key", sa.Text, nullable=False),
        sa.Column("connector_id", sa.Text, nullable=False),
        sa.Column("source_message_id", sa.Text, nullable=False),
        sa.Column("target_channel_id", sa.Text, nullable=False),
        sa.Column("mirrored_message_id", sa.Text, nullable=False),
        sa.Column("mirrored_extra_message_ids", sa.JSON, nullable=True),
        sa.Column("mirrored_guild_id", sa.Text, nullable=True),
        _timestamp("last_mirrored_at"),
        _timestamp("deleted_at", nullable=True),
        sa.UniqueConstraint(
            "tenant_key",
            "connector_id",
            "source_message_id",
            "target_channel_id",
            name="uq_mirrored_signals_source_target",
        ),
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.Text, nullable=False),
        sa.Column("event_id", sa.Text, nullable=False),
        sa.Column("event_type", sa.Text, nullable=False, server_default="unknown"),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("payload_hash", sa.Text, nullable=True),
        sa.Column("customer_email", sa.Text, nullable=True),
        sa.Column("external_customer_id", sa.Text, nullable=True),
        sa.Column("external_subscription_id", sa.Text, nullable=True),
        sa.Column("resolved_user_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("resolved_via", sa.Text, nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="received"),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error", sa.Text, nullable=True),
        _timestamp("received_at"),
        _timestamp("last_attempt_at", nullable=True),
        _timestamp("processed_at", nullable=True),
        sa.UniqueConstraint(
            "provider", "event_id", name="uq_webhook_events_provider_event"
        ),
        sa.CheckConstraint(
            "status IN ('received', 'processed', 'failed')",
            name="ck_webhook_events_status",
        ),
    )
    op.create_index(
        "ix_webhook_events_provider_status",
        "webhook_events",
        ["provider", "status", "received_at"],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("webhook_events")
    op.drop_table("mirrored_signals")
    op.drop_table("connector_mappings")
    op.drop_table("seat_snapshots")
    op.drop_table("server_configs")
    op.drop_table("tier_role_mappings")
    op.drop_table("access_policies")
    op.drop_table("payment_customers")
    op.drop_table("subscriptions")
    op.drop_table("discord_links")
    op.drop_table("users")
    op.drop_table("jobs")

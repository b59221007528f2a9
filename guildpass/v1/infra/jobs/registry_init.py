"""
Job family registration.

Registers the role_sync, seat_audit and signal_mirror families with the global
job family registry.
"""

import logging

from guildpass.v1.core.registries import job_family_registry
from guildpass.v1.infra.jobs.families import (
    ROLE_SYNC,
    SEAT_AUDIT,
    SIGNAL_MIRROR,
    JobFamily,
)
from guildpass.v1.mirror.service import (
    complete_signal_mirror_job,
    enrich_signal_mirror_job,
)
from guildpass.v1.seat_audit.service import (
    complete_seat_audit_job,
    enrich_seat_audit_job,
    fail_seat_audit_job,
)

logger = logging.getLogger(__name__)

ROLE_SYNC_FAMILY = JobFamily(
    name=ROLE_SYNC,
    scope_fields=("user_id", "discord_user_id", "guild_id", "role_id", "action"),
    choices={"action": ("grant", "revoke")},
)

SEAT_AUDIT_FAMILY = JobFamily(
    name=SEAT_AUDIT,
    scope_fields=("tenant_key", "connector_id", "guild_id"),
    enrich=enrich_seat_audit_job,
    on_success=complete_seat_audit_job,
    on_terminal_failure=fail_seat_audit_job,
)

SIGNAL_MIRROR_FAMILY = JobFamily(
    name=SIGNAL_MIRROR,
    scope_fields=(
        "tenant_key",
        "connector_id",
        "source_message_id",
        "target_channel_id",
        "event_type",
    ),
    choices={"event_type": ("create", "update", "delete")},
    enrich=enrich_signal_mirror_job,
    on_success=complete_signal_mirror_job,
)


def register_job_families() -> None:
    """Register all job families with the job family registry."""
    if job_family_registry.is_frozen():
        return

    for family in (ROLE_SYNC_FAMILY, SEAT_AUDIT_FAMILY, SIGNAL_MIRROR_FAMILY):
        job_family_registry.register(family.name, family)

    logger.info(
        "Job families registered",
        extra={"registered_families": job_family_registry.list()},
    )


# Auto-register families when module is imported
register_job_families()

import pytest

from guildpass.v1.core.exceptions import ValidationError
from guildpass.v1.core.registries import Registry, job_family_registry
from guildpass.v1.infra.jobs.families import SCOPE_KEY_SEPARATOR
from guildpass.v1.infra.jobs.registry_init import (
    ROLE_SYNC_FAMILY,
    SEAT_AUDIT_FAMILY,
    SIGNAL_MIRROR_FAMILY,
)


def test_registry_basic_operations():
    """Test basic registry register, get, list operations."""
    registry = Registry[str]("Test")

    assert registry.list() == []

    registry.register("test_impl", "test_value")
    assert registry.get("test_impl") == "test_value"
    assert registry.has("test_impl")
    assert registry.list() == ["test_impl"]

    with pytest.raises(KeyError, match="No test implementation registered"):
        registry.get("nonexistent")


def test_registry_freeze():
    """Test that frozen registries reject new registrations."""
    registry = Registry[str]("Test")
    registry.register("before", "value")
    registry.freeze()

    assert registry.is_frozen()
    with pytest.raises(RuntimeError, match="registry is frozen"):
        registry.register("after", "value")
    assert registry.get("before") == "value"


def test_job_families_registered():
    assert set(job_family_registry.list()) >= {
        "role_sync",
        "seat_audit",
        "signal_mirror",
    }
    assert job_family_registry.get("seat_audit") is SEAT_AUDIT_FAMILY


def test_scope_is_trimmed_and_keyed_in_field_order():
    scope = SEAT_AUDIT_FAMILY.normalize_scope(
        {"guild_id": " g1 ", "tenant_key": "t1", "connector_id": "c1", "extra": "x"}
    )

    assert scope == {"tenant_key": "t1", "connector_id": "c1", "guild_id": "g1"}
    assert SEAT_AUDIT_FAMILY.scope_key(scope) == SCOPE_KEY_SEPARATOR.join(
        ["t1", "c1", "g1"]
    )


def test_scope_rejects_blank_fields():
    with pytest.raises(ValidationError) as exc_info:
        ROLE_SYNC_FAMILY.normalize_scope(
            {
                "user_id": "u1",
                "discord_user_id": "  ",
                "guild_id": "g1",
                "role_id": "r1",
                "action": "grant",
            }
        )
    assert exc_info.value.status_code == 422
    assert exc_info.value.details["missing"] == ["discord_user_id"]


def test_scope_rejects_unknown_choice():
    with pytest.raises(ValidationError, match="Invalid event_type"):
        SIGNAL_MIRROR_FAMILY.normalize_scope(
            {
                "tenant_key": "t",
                "connector_id": "c",
                "source_message_id": "m",
                "target_channel_id": "ch",
                "event_type": "pin",
            }
        )

from uuid import uuid4

import pytest

from guildpass.v1.accounts.models import DiscordLink, Subscription, User
from guildpass.v1.role_sync.models import TierRoleMapping
from guildpass.v1.role_sync.service import RoleSyncService


@pytest.fixture
def service(test_settings) -> RoleSyncService:
    return RoleSyncService(test_settings)


async def add_tier_mappings(session):
    session.add_all(
        [
            TierRoleMapping(tier="basic", guild_id="g1", role_id="r-basic"),
            TierRoleMapping(tier="pro", guild_id="g1", role_id="r-pro"),
            TierRoleMapping(
                tier="legacy", guild_id="g1", role_id="r-old", enabled=False
            ),
        ]
    )
    await session.commit()


async def scopes(service, session):
    jobs, _ = await service.job_service.list_jobs(session, family="role_sync")
    return {(job.scope["role_id"], job.scope["action"]) for job in jobs}


async def test_active_tier_grants_mapped_and_revokes_other_roles(
    service, db_session, now
):
    await add_tier_mappings(db_session)
    user_id = uuid4()

    result = await service.enqueue_for_subscription(
        db_session, user_id, "d1", "active", "pro", "payment_order.paid", now=now
    )

    assert result.mapping_source == "tier_config"
    assert result.mapped_tier == "pro"
    assert (result.granted, result.revoked) == (1, 1)
    assert await scopes(service, db_session) == {
        ("r-pro", "grant"),
        ("r-basic", "revoke"),
    }


async def test_inactive_revokes_every_managed_role(service, db_session, now):
    await add_tier_mappings(db_session)

    result = await service.enqueue_for_subscription(
        db_session, uuid4(), "d1", "canceled", "pro", "payment_refund", now=now
    )

    assert (result.granted, result.revoked) == (0, 2)


async def test_repeat_fanout_is_deduplicated(service, db_session, now):
    await add_tier_mappings(db_session)
    user_id = uuid4()

    await service.enqueue_for_subscription(
        db_session, user_id, "d1", "active", "basic", "a", now=now
    )
    again = await service.enqueue_for_subscription(
        db_session, user_id, "d1", "active", "basic", "b", now=now
    )

    assert again.deduped == 2
    assert again.granted == again.revoked == 0


async def test_legacy_env_mapping(test_settings, db_session, now):
    service = RoleSyncService(
        test_settings.model_copy(
            update={"legacy_role_guild_id": "lg", "legacy_role_id": "lr"}
        )
    )

    active = await service.enqueue_for_subscription(
        db_session, uuid4(), "d1", "active", None, "s", now=now
    )
    inactive = await service.enqueue_for_subscription(
        db_session, uuid4(), "d2", "inactive", None, "s", now=now
    )

    assert active.mapping_source == "legacy_env"
    assert active.granted == 1
    assert inactive.revoked == 1


async def test_unconfigured_mapping_is_skipped(service, db_session, now):
    result = await service.enqueue_for_subscription(
        db_session, uuid4(), "d1", "active", "pro", "s", now=now
    )

    assert result.mapping_source == "none"
    assert result.skipped == 1
    assert await scopes(service, db_session) == set()


async def test_blank_discord_id_is_skipped(service, db_session, now):
    await add_tier_mappings(db_session)

    result = await service.enqueue_for_subscription(
        db_session, uuid4(), "  ", "active", "pro", "s", now=now
    )

    assert result.skipped == 2


async def test_resync_endpoint_uses_active_links(async_client, db_session, now):
    await add_tier_mappings(db_session)
    user = User(email="a@example.com")
    db_session.add(user)
    await db_session.flush()
    db_session.add_all(
        [
            DiscordLink(user_id=user.id, discord_user_id="d-live"),
            DiscordLink(user_id=user.id, discord_user_id="d-gone", unlinked_at=now),
            Subscription(user_id=user.id, tier="basic", status="active"),
        ]
    )
    await db_session.commit()

    response = await async_client.post(f"/v1/role-sync/users/{user.id}/resync")

    data = response.json()["data"]
    assert data["links"] == 1
    assert data["subscription_status"] == "active"
    assert data["fanouts"][0]["granted"] == 1


async def test_resync_unknown_user(async_client):
    response = await async_client.post(f"/v1/role-sync/users/{uuid4()}/resync")
    assert response.status_code == 404

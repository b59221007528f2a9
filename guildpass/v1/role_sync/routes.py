import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Query
from sqlalchemy.ext.asyncio import AsyncSession

from guildpass.config.settings import Settings, SettingsDep
from guildpass.infra.database import SessionDep
from guildpass.v1.accounts.models import User
from guildpass.v1.core.exceptions import NotFoundError, create_success_response
from guildpass.v1.core.security import Principal, PrincipalDep
from guildpass.v1.role_sync.service import RoleSyncService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/role-sync", tags=["role-sync"])


@router.post("/users/{user_id}/resync", response_model=dict)
async def resync_user(
    user_id: UUID,
    source: str = Query(default="admin_manual_resync"),
    principal: Principal = PrincipalDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Re-derive and queue role grants/revokes for every linked Discord account."""
    if await session.get(User, user_id) is None:
        raise NotFoundError("User not found", details={"user_id": str(user_id)})

    result = await RoleSyncService(settings).enqueue_for_user(session, user_id, source)
    logger.info(
        "Role resync requested",
        extra={
            "user_id": str(user_id),
            "links": result.links,
            "operator_id": principal.operator_id,
        },
    )
    return create_success_response(data=result.model_dump())

"""
Seat audit endpoints: manual refresh, scheduled sweeps and the enforcement gate.
"""

import logging
from typing import Any

from fastapi import APIRouter, Query
from sqlalchemy.ext.asyncio import AsyncSession

from guildpass.config.settings import Settings, SettingsDep
from guildpass.infra.database import SessionDep
from guildpass.v1.core.exceptions import NotFoundError, create_success_response
from guildpass.v1.core.security import Principal, PrincipalDep, WorkerDep, WorkerIdentity
from guildpass.v1.seat_audit.schemas import (
    SeatScope,
    SeatSnapshotResponse,
    SeatSweepRequest,
)
from guildpass.v1.seat_audit.service import SeatAuditService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/seat-audit", tags=["seat-audit"])


@router.post("/refresh", response_model=dict)
async def request_refresh(
    scope: SeatScope,
    principal: Principal = PrincipalDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Queue an immediate seat count for one guild."""
    result = await SeatAuditService(settings).request_refresh(
        session, scope.tenant_key, scope.connector_id, scope.guild_id
    )
    logger.info(
        "Seat audit refresh requested",
        extra={
            "guild_id": scope.guild_id,
            "job_id": str(result.job_id),
            "deduped": result.deduped,
            "operator_id": principal.operator_id,
        },
    )
    return create_success_response(data=result.model_dump(mode="json"))


@router.post("/sweep", response_model=dict)
async def sweep_due_audits(
    request: SeatSweepRequest,
    principal: Principal = PrincipalDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Queue audits for due snapshots and never-measured guilds."""
    result = await SeatAuditService(settings).enqueue_due(session, limit=request.limit)
    return create_success_response(data=result.model_dump())


@router.post("/refresh-statuses", response_model=dict)
async def refresh_snapshot_statuses(
    principal: Principal = PrincipalDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Recompute fresh/stale/expired for stored snapshots."""
    result = await SeatAuditService(settings).refresh_snapshot_statuses(session)
    return create_success_response(data=result.model_dump())


@router.get("/gate", response_model=dict)
async def evaluate_gate(
    tenant_key: str = Query(..., min_length=1),
    connector_id: str = Query(..., min_length=1),
    guild_id: str = Query(..., min_length=1),
    max_age_ms: int | None = Query(
        default=None, description="Snapshot freshness, clamped to 5s..15min"
    ),
    worker: WorkerIdentity = WorkerDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Decide whether mirrored content may be delivered to a guild."""
    decision = await SeatAuditService(settings).evaluate_gate(
        session, tenant_key, connector_id, guild_id, freshness_ms=max_age_ms
    )
    return create_success_response(
        data={**decision.model_dump(), "allowed": decision.allowed}
    )


@router.get("/snapshot", response_model=dict)
async def get_snapshot(
    tenant_key: str = Query(..., min_length=1),
    connector_id: str = Query(..., min_length=1),
    guild_id: str = Query(..., min_length=1),
    principal: Principal = PrincipalDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Latest stored seat snapshot of a guild."""
    snapshot = await SeatAuditService(settings).get_snapshot(
        session, tenant_key, connector_id, guild_id
    )
    if snapshot is None:
        raise NotFoundError("Seat snapshot not found", details={"guild_id": guild_id})
    return create_success_response(
        data=SeatSnapshotResponse.model_validate(snapshot).model_dump(mode="json")
    )

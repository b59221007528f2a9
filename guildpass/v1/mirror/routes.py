from typing import Any

from fastapi import APIRouter
from sqlalchemy.ext.asyncio import AsyncSession

from guildpass.config.settings import Settings, SettingsDep
from guildpass.infra.database import SessionDep
from guildpass.v1.core.exceptions import create_success_response
from guildpass.v1.core.security import WorkerDep, WorkerIdentity
from guildpass.v1.mirror.schemas import SignalEvent
from guildpass.v1.mirror.service import MirrorService

router = APIRouter(prefix="/mirror", tags=["mirror"])


@router.post("/signals", response_model=dict)
async def ingest_signal(
    signal: SignalEvent,
    worker: WorkerIdentity = WorkerDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Queue mirror jobs for a source message event."""
    result = await MirrorService(settings).enqueue_mirror_jobs_for_signal(
        session, signal
    )
    return create_success_response(data=result.model_dump())

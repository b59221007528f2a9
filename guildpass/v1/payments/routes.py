"""
Payment webhook endpoints.

Admission (JSON, signature, event id) happens before anything is stored; a
rejected delivery leaves no trace. Webhook and replay responses are the bare
result body so providers and scripts can read ``ok``/``deduped`` directly.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from guildpass.config.settings import Settings, SettingsDep, get_settings
from guildpass.infra.database import SessionDep
from guildpass.v1.accounts.service import AccountService
from guildpass.v1.core.exceptions import (
    ServiceUnavailableError,
    UnauthorizedError,
    create_success_response,
)
from guildpass.v1.core.security import (
    Principal,
    PrincipalDep,
    extract_bearer_token,
    tokens_match,
)
from guildpass.v1.payments.projection import resolve_event_id
from guildpass.v1.payments.schemas import (
    ReplayRequest,
    WebhookFailure,
    WebhookFailureList,
    WebhookProcessResult,
)
from guildpass.v1.payments.service import WebhookService
from guildpass.v1.payments.signatures import payload_hash, read_signature, verify_signature

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])
subscriptions_router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def _rejection(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": error})


def _result_response(result: WebhookProcessResult) -> JSONResponse:
    status_code = (
        status.HTTP_200_OK if result.ok else status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


async def require_replay_operator(
    authorization: str | None = Header(None, alias="Authorization"),
    x_replay_token: str | None = Header(None, alias="X-Replay-Token"),
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard for replay and failure listing; disabled without a replay token."""
    if not settings.replay_token:
        raise ServiceUnavailableError("webhook_replay_not_configured")
    presented = (x_replay_token or "").strip() or extract_bearer_token(authorization)
    if not tokens_match(presented, settings.replay_token):
        raise UnauthorizedError("invalid_replay_token")


ReplayOperatorDep = Depends(require_replay_operator)


@router.post("/sellapp")
async def receive_sellapp_webhook(
    request: Request,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> JSONResponse:
    """Admit, record and process a Sell.app delivery."""
    body = await request.body()
    try:
        payload: Any = json.loads(body)
    except ValueError:
        return _rejection(status.HTTP_400_BAD_REQUEST, "invalid_json")

    if settings.sellapp_webhook_secret:
        signature = read_signature(request.headers)
        if signature is None:
            return _rejection(status.HTTP_401_UNAUTHORIZED, "missing_signature")
        if not verify_signature(settings.sellapp_webhook_secret, body, signature):
            logger.warning("Webhook signature rejected")
            return _rejection(status.HTTP_401_UNAUTHORIZED, "invalid_signature")
    else:
        logger.warning("SELLAPP_WEBHOOK_SECRET not set; signature check skipped")

    event_id = resolve_event_id(payload, dict(request.headers))
    if event_id is None:
        return _rejection(status.HTTP_400_BAD_REQUEST, "missing_event_id")

    result = await WebhookService(settings).ingest(
        session, event_id, payload, payload_hash(body)
    )
    return _result_response(result)


@router.post("/sellapp/replay", dependencies=[ReplayOperatorDep])
async def replay_sellapp_webhook(
    request: ReplayRequest,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> JSONResponse:
    """Re-run processing of a stored event."""
    result = await WebhookService(settings).replay(session, request.event_id.strip())
    return _result_response(result)


@router.get("/sellapp/failures", response_model=dict, dependencies=[ReplayOperatorDep])
async def list_sellapp_failures(
    limit: int = Query(default=50, ge=1, le=200, description="Maximum results"),
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Events that failed or were never processed, newest first."""
    events = await WebhookService(settings).list_failures(session, limit)
    response_data = WebhookFailureList(
        failures=[WebhookFailure.model_validate(event) for event in events],
        limit=limit,
    )
    return create_success_response(data=response_data.model_dump(mode="json"))


@subscriptions_router.post("/expire-fixed-term", response_model=dict)
async def expire_fixed_term_subscriptions(
    limit: int | None = Query(default=None, ge=1, le=500),
    principal: Principal = PrincipalDep,
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Deactivate fixed-term subscriptions past their end date."""
    result = await AccountService(settings).expire_fixed_term_subscriptions(
        session, limit=limit
    )
    return create_success_response(data=result.model_dump())

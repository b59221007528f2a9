from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class RecordResult(BaseModel):
    """Phase 1 outcome: whether this delivery created the event row."""

    created: bool
    status: str
    attempt_count: int


class WebhookProcessResult(BaseModel):
    ok: bool
    event_id: str
    deduped: bool = False
    status: str | None = None
    subscription_status: str | None = None
    user_id: UUID | None = None
    resolved_via: str | None = None
    error_code: str | None = None
    error: str | None = None


class ReplayRequest(BaseModel):
    event_id: str = Field(..., min_length=1)


class WebhookFailure(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider: str
    event_id: str
    event_type: str
    status: str
    customer_email: str | None = None
    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    received_at: datetime
    last_attempt_at: datetime | None = None
    attempt_count: int
    error: str | None = None


class WebhookFailureList(BaseModel):
    failures: list[WebhookFailure]
    limit: int

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class SeatScope(BaseModel):
    tenant_key: str = Field(..., min_length=1)
    connector_id: str = Field(..., min_length=1)
    guild_id: str = Field(..., min_length=1)


class SeatSweepRequest(BaseModel):
    limit: int | None = Field(default=None, description="Clamped to 1..500")


class SeatSweepResult(BaseModel):
    scanned: int
    enqueued: int
    deduped: int


class SnapshotRefreshResult(BaseModel):
    updated: int


class SeatGateDecision(BaseModel):
    action: Literal["allow", "block"]
    reason: Literal[
        "enforcement_disabled",
        "under_limit",
        "seat_check_pending",
        "seat_limit_exceeded",
    ]

    @property
    def allowed(self) -> bool:
        return self.action == "allow"


class SeatSnapshotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_key: str
    connector_id: str
    guild_id: str
    seats_used: int
    seat_limit: int
    is_over_limit: bool
    status: str
    checked_at: datetime
    next_check_after: datetime
    last_error: str | None = None

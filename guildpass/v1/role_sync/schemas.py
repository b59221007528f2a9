from typing import Literal

from pydantic import BaseModel

MappingSource = Literal["tier_config", "legacy_env", "none"]


class RoleSyncFanoutResult(BaseModel):
    """Counts from turning one subscription state into grant/revoke jobs."""

    mapping_source: MappingSource
    mapped_tier: str | None = None
    granted: int = 0
    revoked: int = 0
    deduped: int = 0
    skipped: int = 0


class UserResyncResult(BaseModel):
    user_id: str
    subscription_status: str
    links: int
    fanouts: list[RoleSyncFanoutResult]

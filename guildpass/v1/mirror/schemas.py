from typing import Literal

from pydantic import BaseModel, Field


class SignalAttachment(BaseModel):
    attachment_id: str | None = None
    url: str
    name: str | None = None
    content_type: str | None = None
    size: int | None = None


class MirrorTarget(BaseModel):
    target_channel_id: str
    target_guild_id: str | None = None


class SignalEvent(BaseModel):
    """A create, update or delete of a message in a mirrored source channel."""

    tenant_key: str = Field(..., min_length=1)
    connector_id: str = Field(..., min_length=1)
    source_message_id: str = Field(..., min_length=1)
    source_channel_id: str = Field(..., min_length=1)
    source_guild_id: str = Field(..., min_length=1)
    event_type: Literal["create", "update", "delete"]
    content: str = ""
    attachments: list[SignalAttachment] = Field(default_factory=list)
    source_created_at: int = Field(..., description="Epoch milliseconds")
    source_edited_at: int | None = None
    source_deleted_at: int | None = None
    targets: list[MirrorTarget] | None = Field(
        default=None,
        description="Explicit targets; connector mappings are used when omitted",
    )


class MirrorFanoutResult(BaseModel):
    enqueued: int = 0
    deduped: int = 0
    skipped: int = 0

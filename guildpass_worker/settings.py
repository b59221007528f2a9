import os
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_worker_id() -> str:
    return f"discord-worker-{os.getpid()}"


class WorkerSettings(BaseSettings):
    """Queue worker process configuration, read from ``GUILDPASS_WORKER_*``."""

    model_config = SettingsConfigDict(
        env_prefix="GUILDPASS_WORKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # API connection
    api_base_url: str = Field(
        default="http://localhost:8000", description="GuildPass API base URL"
    )
    api_token: str = Field(default="", description="Worker bearer token")
    request_timeout_s: float = Field(default=30.0, gt=0)
    worker_id: str = Field(default_factory=_default_worker_id)

    # Wake scheduling
    wake_fallback_min_ms: int = Field(default=250, ge=50, le=5000)
    wake_fallback_max_ms: int = Field(default=1000, ge=100, le=10000)
    wake_stream_enabled: bool = Field(
        default=True, description="Subscribe to the server-sent wake feed"
    )
    wake_reconnect_delay_ms: int = Field(default=2000, ge=100, le=60000)

    # Claim batch sizes
    role_sync_claim_limit: int = Field(default=5, ge=1, le=20)
    mirror_claim_limit: int = Field(default=10, ge=1, le=20)
    seat_audit_claim_limit: int = Field(default=3, ge=1, le=20)
    seat_audit_poll_interval_ms: int = Field(default=30_000, ge=1000)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    debug: bool = Field(default=False)

    @model_validator(mode="after")
    def check_fallback_window(self) -> "WorkerSettings":
        if self.wake_fallback_max_ms < self.wake_fallback_min_ms:
            raise ValueError(
                "GUILDPASS_WORKER_WAKE_FALLBACK_MAX_MS must be >= "
                "GUILDPASS_WORKER_WAKE_FALLBACK_MIN_MS"
            )
        return self

    def claim_limits(self) -> dict[str, int]:
        return {
            "role_sync": self.role_sync_claim_limit,
            "signal_mirror": self.mirror_claim_limit,
            "seat_audit": self.seat_audit_claim_limit,
        }

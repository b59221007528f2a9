"""
Seat-limit gate: decides whether a guild may keep receiving mirrored content
given its configuration and latest seat snapshot.
"""

from datetime import datetime

from guildpass.v1.seat_audit.models import SeatSnapshot, ServerConfig, SnapshotStatus
from guildpass.v1.seat_audit.schemas import SeatGateDecision

DEFAULT_GATE_FRESHNESS_MS = 90_000
MIN_GATE_FRESHNESS_MS = 5_000
MAX_GATE_FRESHNESS_MS = 15 * 60_000


def clamp_freshness_ms(freshness_ms: int | None) -> int:
    if freshness_ms is None:
        return DEFAULT_GATE_FRESHNESS_MS
    return max(MIN_GATE_FRESHNESS_MS, min(MAX_GATE_FRESHNESS_MS, int(freshness_ms)))


def age_ms(now: datetime, checked_at: datetime) -> int:
    return max(0, int((now - checked_at).total_seconds() * 1000))


def snapshot_status(
    now: datetime, checked_at: datetime, fresh_ms: int, stale_ms: int
) -> str:
    """Freshness of a snapshot taken at ``checked_at``."""
    age = age_ms(now, checked_at)
    if age <= fresh_ms:
        return SnapshotStatus.FRESH.value
    if age <= stale_ms:
        return SnapshotStatus.STALE.value
    return SnapshotStatus.EXPIRED.value


def evaluate_seat_gate(
    now: datetime,
    config: ServerConfig | None,
    snapshot: SeatSnapshot | None,
    freshness_ms: int | None = None,
) -> SeatGateDecision:
    if config is None or not config.seat_enforcement_enabled:
        return SeatGateDecision(action="allow", reason="enforcement_disabled")

    if config.seat_limit is None or config.seat_limit < 0:
        return SeatGateDecision(action="block", reason="seat_check_pending")

    if snapshot is None:
        return SeatGateDecision(action="block", reason="seat_check_pending")

    if age_ms(now, snapshot.checked_at) > clamp_freshness_ms(freshness_ms):
        return SeatGateDecision(action="block", reason="seat_check_pending")

    if snapshot.is_over_limit or snapshot.seats_used > config.seat_limit:
        return SeatGateDecision(action="block", reason="seat_limit_exceeded")

    return SeatGateDecision(action="allow", reason="under_limit")

"""
Retry backoff shared by every job family.
"""

from datetime import datetime, timedelta

DEFAULT_BACKOFF_BASE_MS = 5000
DEFAULT_BACKOFF_CAP_MS = 15 * 60 * 1000


def compute_backoff_ms(
    attempt: int,
    base_ms: int = DEFAULT_BACKOFF_BASE_MS,
    cap_ms: int = DEFAULT_BACKOFF_CAP_MS,
) -> int:
    """Delay before the next attempt after ``attempt`` failed claims.

    ``min(cap, base * 2 ** (attempt - 1))``; attempts below 1 use the base.
    """
    exponent = max(0, attempt - 1)
    # Past this exponent the product always exceeds any realistic cap.
    if exponent >= 62:
        return cap_ms
    return min(cap_ms, base_ms * (2**exponent))


def next_run_after(
    now: datetime,
    attempt: int,
    base_ms: int = DEFAULT_BACKOFF_BASE_MS,
    cap_ms: int = DEFAULT_BACKOFF_CAP_MS,
) -> datetime:
    """Absolute time a failed job becomes eligible again."""
    return now + timedelta(milliseconds=compute_backoff_ms(attempt, base_ms, cap_ms))

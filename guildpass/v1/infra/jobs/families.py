"""
Job family definitions.

A family fixes the scope tuple used as dedup key, the retry policy, and the
optional hooks run by the claimer (read-only enrichment) and the completer
(side effects on success or terminal failure).
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession

from guildpass.v1.core.exceptions import ValidationError
from guildpass.v1.infra.jobs.models import Job

if TYPE_CHECKING:
    from guildpass.v1.infra.jobs.service import JobService

ROLE_SYNC = "role_sync"
SEAT_AUDIT = "seat_audit"
SIGNAL_MIRROR = "signal_mirror"

SCOPE_KEY_SEPARATOR = "\x1f"

EnrichHook = Callable[["JobService", AsyncSession, Job], Awaitable[dict[str, Any]]]
SuccessHook = Callable[
    ["JobService", AsyncSession, Job, dict[str, Any], datetime], Awaitable[None]
]
TerminalFailureHook = Callable[
    ["JobService", AsyncSession, Job, str, datetime], Awaitable[None]
]


class JobResultRejected(Exception):
    """Raised by a success hook when the reported result is unusable.

    The completer then applies the failure path with this message.
    """


@dataclass(frozen=True)
class JobFamily:
    name: str
    scope_fields: tuple[str, ...]
    choices: dict[str, tuple[str, ...]] = field(default_factory=dict)
    max_attempts: int | None = None
    backoff_base_ms: int | None = None
    backoff_cap_ms: int | None = None
    enrich: EnrichHook | None = None
    on_success: SuccessHook | None = None
    on_terminal_failure: TerminalFailureHook | None = None

    def normalize_scope(self, scope: dict[str, Any]) -> dict[str, str]:
        """Trim every scope field and reject blanks or unknown enum values."""
        normalized: dict[str, str] = {}
        missing: list[str] = []
        for name in self.scope_fields:
            raw = scope.get(name)
            value = str(raw).strip() if raw is not None else ""
            if not value:
                missing.append(name)
                continue
            allowed = self.choices.get(name)
            if allowed and value not in allowed:
                raise ValidationError(
                    f"Invalid {name} for {self.name}: {value}",
                    details={"field": name, "allowed": list(allowed)},
                )
            normalized[name] = value

        if missing:
            raise ValidationError(
                f"Missing scope fields for {self.name}: {', '.join(missing)}",
                details={"missing": missing},
            )
        return normalized

    def scope_key(self, scope: dict[str, str]) -> str:
        return SCOPE_KEY_SEPARATOR.join(scope[name] for name in self.scope_fields)

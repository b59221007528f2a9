"""
Projection of loosely shaped Sell.app webhook payloads onto the fields the
pipeline needs. Every field is looked up along an ordered list of dotted paths;
the first non-blank string (or finite number) wins.
"""

import math
import re
from dataclasses import dataclass
from typing import Any

from guildpass.v1.accounts.models import SubscriptionStatus

EVENT_ID_PATHS = (
    "event_id",
    "id",
    "event.id",
    "event.data.id",
    "data.event_id",
    "data.id",
    "webhook.id",
)
EVENT_TYPE_PATHS = (
    "event_type",
    "event",
    "type",
    "event.type",
    "data.event_type",
    "data.type",
)
CUSTOMER_EMAIL_PATHS = (
    "customer_email",
    "email",
    "customer.email",
    "buyer.email",
    "data.customer_email",
    "data.email",
    "data.customer.email",
    "data.buyer.email",
)
PRODUCT_ID_PATHS = ("product_id", "product.id", "data.product_id", "data.product.id")
VARIANT_ID_PATHS = ("variant_id", "variant.id", "data.variant_id", "data.variant.id")
CUSTOMER_ID_PATHS = (
    "customer_id",
    "customer.id",
    "buyer.id",
    "data.customer_id",
    "data.customer.id",
    "data.buyer.id",
)
SUBSCRIPTION_ID_PATHS = (
    "subscription_id",
    "subscription.id",
    "data.subscription_id",
    "data.subscription.id",
)
STATUS_PATHS = (
    "subscription_status",
    "status",
    "payment_status",
    "data.subscription_status",
    "data.status",
    "data.payment_status",
)
FALLBACK_EVENT_ID_HEADERS = ("x-sellapp-event-id", "x-event-id", "x-webhook-id")

# Checked in order; the first group with a match decides the status. A keyword
# must start at a word boundary so "inactive" never reads as "active".
STATUS_KEYWORDS: tuple[tuple[SubscriptionStatus, tuple[str, ...]], ...] = (
    (
        SubscriptionStatus.CANCELED,
        ("chargeback", "refund", "cancel", "revoke"),
    ),
    (
        SubscriptionStatus.PAST_DUE,
        ("past_due", "past due", "payment_failed", "failed", "overdue", "unpaid"),
    ),
    (
        SubscriptionStatus.ACTIVE,
        ("active", "paid", "purchase", "completed", "renew", "success", "trialing"),
    ),
    (
        SubscriptionStatus.INACTIVE,
        ("expired", "inactive", "ended", "disabled"),
    ),
)


def read_path(payload: Any, path: str) -> Any:
    cursor = payload
    for part in path.split("."):
        if not isinstance(cursor, dict):
            return None
        cursor = cursor.get(part)
    return cursor


def coerce_string(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value):
        return str(int(value)) if value.is_integer() else str(value)
    return None


def read_first_string(payload: Any, paths: tuple[str, ...]) -> str | None:
    for path in paths:
        value = coerce_string(read_path(payload, path))
        if value:
            return value
    return None


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    normalized = email.strip().lower()
    return normalized if "@" in normalized else None


def map_subscription_status(
    event_type: str | None, raw_status: str | None
) -> SubscriptionStatus:
    """Map provider lifecycle words onto a subscription status.

    Unknown states map to inactive so access is never granted by accident.
    """
    source = f"{(raw_status or '').strip().lower()} {(event_type or '').strip().lower()}"
    source = source.strip()
    if not source:
        return SubscriptionStatus.INACTIVE
    for status, keywords in STATUS_KEYWORDS:
        if any(re.search(rf"(?<![a-z]){re.escape(k)}", source) for k in keywords):
            return status
    return SubscriptionStatus.INACTIVE


def resolve_event_id(payload: Any, headers: dict[str, str] | None = None) -> str | None:
    """Event id from the payload, falling back to provider delivery headers."""
    event_id = read_first_string(payload, EVENT_ID_PATHS)
    if event_id:
        return event_id
    for header in FALLBACK_EVENT_ID_HEADERS:
        value = coerce_string((headers or {}).get(header))
        if value:
            return value
    return None


@dataclass(frozen=True)
class WebhookProjection:
    event_type: str
    customer_email: str | None
    product_id: str | None
    variant_id: str | None
    external_customer_id: str | None
    external_subscription_id: str | None
    raw_status: str | None
    subscription_status: SubscriptionStatus


def project_payload(payload: Any) -> WebhookProjection:
    event_type = read_first_string(payload, EVENT_TYPE_PATHS) or "unknown"
    raw_status = read_first_string(payload, STATUS_PATHS)
    return WebhookProjection(
        event_type=event_type,
        customer_email=normalize_email(read_first_string(payload, CUSTOMER_EMAIL_PATHS)),
        product_id=read_first_string(payload, PRODUCT_ID_PATHS),
        variant_id=read_first_string(payload, VARIANT_ID_PATHS),
        external_customer_id=read_first_string(payload, CUSTOMER_ID_PATHS),
        external_subscription_id=read_first_string(payload, SUBSCRIPTION_ID_PATHS),
        raw_status=raw_status,
        subscription_status=map_subscription_status(event_type, raw_status),
    )

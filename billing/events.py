"""
Normalized Billing Events
Owner: CC2
Workstream: W2P2

Every payment provider's webhook payload is turned into a BillingEvent
before the reconciler sees it. Event kinds form a closed set: a provider
event that does not map onto one of them becomes EventKind.UNKNOWN.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any


class EventKind(str, Enum):
    SUBSCRIPTION_CREATED = 'subscription.created'
    SUBSCRIPTION_UPDATED = 'subscription.updated'
    SUBSCRIPTION_CANCELED = 'subscription.canceled'
    INVOICE_PAID = 'invoice.paid'
    INVOICE_PAYMENT_FAILED = 'invoice.payment_failed'
    UNKNOWN = 'unknown'


class SubscriptionStatus(str, Enum):
    ACTIVE = 'ACTIVE'
    PAST_DUE = 'PAST_DUE'
    CANCELED = 'CANCELED'
    TRIALING = 'TRIALING'
    INCOMPLETE = 'INCOMPLETE'


class PendingOrderStatus(str, Enum):
    PENDING = 'PENDING'
    COMPLETED = 'COMPLETED'


# Inline entitlement fields a webhook must carry in full to be snapshotted
REQUIRED_INLINE_ENTITLEMENTS = ('active_user_cap', 'seat_cap', 'storage_gb_cap', 'site_cap')


@dataclass(frozen=True)
class BillingEvent:
    provider: str
    event_id: str
    kind: EventKind
    org_id: Optional[str] = None
    subscription_id: Optional[str] = None
    pending_order_id: Optional[str] = None
    checkout_id: Optional[str] = None
    customer_id: Optional[str] = None
    plan_code: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    entitlements: Optional[Dict[str, Any]] = field(default=None, hash=False, compare=False)

    def with_org(self, org_id: str) -> 'BillingEvent':
        return replace(self, org_id=org_id)

    def has_full_inline_entitlements(self) -> bool:
        """True only when every required inline field is present (null counts as present)."""
        if not isinstance(self.entitlements, dict):
            return False
        return all(key in self.entitlements for key in REQUIRED_INLINE_ENTITLEMENTS)


def parse_kind(raw: Any) -> EventKind:
    try:
        return EventKind(raw)
    except ValueError:
        return EventKind.UNKNOWN


def parse_status(raw: Any) -> Optional[SubscriptionStatus]:
    """Accept 'ACTIVE', 'active', 'past_due'...; anything else is None."""
    if not isinstance(raw, str):
        return None
    try:
        return SubscriptionStatus(raw.strip().upper())
    except ValueError:
        return None


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string or a unix epoch into an aware UTC datetime.

    Returns None for empty or unparseable values.
    """
    if raw is None or raw == '' or isinstance(raw, bool):
        return None
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw, tz=timezone.utc)
    if isinstance(raw, str):
        value = raw.strip()
        if value.endswith('Z'):
            value = value[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

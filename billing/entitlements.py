"""
Entitlement Resolver
Owner: CC2
Workstream: W2P3

Works out what an org is allowed to use right now.

Precedence for every cap:
1. Latest entitlement snapshot, if one exists at all. A null cap in the
   snapshot means "no cap"; it never falls back to the catalogue.
2. Plan catalogue entry for the latest subscription's plan code.
3. Nothing: all caps null, source "fallback".
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any

from .errors import OrgContextError
from .plans import get_plan, normalize_plan_code

SOURCE_PLAN_CATALOGUE = 'plan_catalogue'
SOURCE_FALLBACK = 'fallback'

NO_SUBSCRIPTION = 'NONE'


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else value


@dataclass
class ResolvedEntitlements:
    org_id: str
    subscription_status: str
    subscription: Optional[Dict[str, Any]]
    caps: Dict[str, Optional[int]]
    usage: Dict[str, Any]
    flags: Dict[str, Any] = field(default_factory=dict)
    source: str = SOURCE_FALLBACK

    @property
    def active_user_cap(self) -> Optional[int]:
        return self.caps.get('active_user_cap')

    @property
    def current_active_users(self) -> Optional[int]:
        return self.usage.get('current_active_users')

    @property
    def usage_calculated_at(self) -> Optional[datetime]:
        return self.usage.get('usage_calculated_at')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'org_id': self.org_id,
            'subscription_status': self.subscription_status,
            'subscription': {k: _iso(v) for k, v in self.subscription.items()} if self.subscription else None,
            'caps': dict(self.caps),
            'usage': {k: _iso(v) for k, v in self.usage.items()},
            'flags': self.flags,
            'source': self.source,
        }


class EntitlementResolver:
    """
    Args:
        store: MemoryStore or PostgresStore
        max_workers: Threads used for the three parallel reads
    """

    READS = ('latest_subscription', 'latest_snapshot', 'latest_usage')

    def __init__(self, store, max_workers: int = 3):
        self.store = store
        self.max_workers = max_workers

    def _read(self, operation: str, org_id: str) -> Optional[Dict[str, Any]]:
        with self.store.transaction(read_only=True) as unit:
            return getattr(unit, operation)(org_id)

    def resolve(self, org_id: str) -> ResolvedEntitlements:
        """
        Resolve caps, usage and subscription state for an org.

        Raises:
            OrgContextError: empty org id
            StorageUnavailableError: database unreachable
        """
        if not org_id:
            raise OrgContextError('Entitlements require an organisation')

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {op: pool.submit(self._read, op, org_id) for op in self.READS}
            subscription = futures['latest_subscription'].result()
            snapshot = futures['latest_snapshot'].result()
            usage = futures['latest_usage'].result()

        caps, flags, source = self._caps(subscription, snapshot)

        return ResolvedEntitlements(
            org_id=org_id,
            subscription_status=subscription['status'] if subscription else NO_SUBSCRIPTION,
            subscription=self._subscription_summary(subscription),
            caps=caps,
            usage={
                'current_active_users': usage.get('active_users') if usage else None,
                'storage_gb_used': usage.get('storage_gb') if usage else None,
                'messages_this_month': usage.get('messages_month') if usage else None,
                'usage_calculated_at': usage.get('calculated_at') if usage else None,
            },
            flags=flags,
            source=source,
        )

    def _caps(self, subscription, snapshot):
        if snapshot is not None:
            flags = dict(snapshot.get('flags') or {})
            caps = {
                'active_user_cap': snapshot.get('active_user_cap'),
                'seat_cap': snapshot.get('seat_cap'),
                'storage_gb_cap': snapshot.get('storage_gb_cap'),
                'site_cap': snapshot.get('site_cap'),
                'messaging_cap': flags.get('messaging_cap'),
            }
            return caps, flags, snapshot['source']

        plan = get_plan(normalize_plan_code(subscription['plan_code'])) if subscription else None
        if plan is not None:
            flags = {'max_active_classes': plan.max_active_classes} if plan.max_active_classes else {}
            return plan.caps(), flags, SOURCE_PLAN_CATALOGUE

        caps = {
            'active_user_cap': None,
            'seat_cap': None,
            'storage_gb_cap': None,
            'site_cap': None,
            'messaging_cap': None,
        }
        return caps, {}, SOURCE_FALLBACK

    def _subscription_summary(self, subscription) -> Optional[Dict[str, Any]]:
        if subscription is None:
            return None
        return {
            'plan_code': subscription['plan_code'],
            'status': subscription['status'],
            'provider': subscription['provider'],
            'provider_subscription_id': subscription['provider_subscription_id'],
            'current_period_start': subscription['period_start'],
            'current_period_end': subscription['period_end'],
            'cancel_at_period_end': subscription['cancel_at_period_end'],
        }

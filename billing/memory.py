"""
In-Memory Billing Store
Owner: CC2
Workstream: W2P2

Same unit-of-work API as PostgresStore, kept in process. Used when no
DATABASE_URL is configured (local development with the FAKE provider)
and by the test suite.

Write transactions run one at a time against a copy of the tables; the copy
replaces the live tables only when the block exits cleanly. Read-only
transactions read the live tables directly and may not write.
"""

import copy
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, Dict, Any, List

from .errors import DuplicateEventError
from .events import utcnow


def _empty_tables() -> Dict[str, Any]:
    return {
        'pending_orders': {},   # id -> row
        'subscriptions': {},    # provider_subscription_id -> row
        'snapshots': [],
        'usage': [],
        'event_log': {},        # (provider, event_id) -> row
        'seq': 0,
    }


def _copy(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return copy.deepcopy(row) if row is not None else None


def _newest(rows: List[Dict[str, Any]], key: str) -> Optional[Dict[str, Any]]:
    if not rows:
        return None
    return _copy(max(rows, key=lambda row: (row[key], row['_seq'])))


def _public(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return {k: v for k, v in row.items() if not k.startswith('_')}


class MemoryUnit:
    """One transaction's view of the billing tables."""

    def __init__(self, tables: Dict[str, Any], read_only: bool = False):
        self.tables = tables
        self.read_only = read_only

    def _writable(self):
        if self.read_only:
            raise RuntimeError('write attempted in a read-only billing transaction')

    def _next_seq(self) -> int:
        self.tables['seq'] += 1
        return self.tables['seq']

    # -- billing event log -------------------------------------------------

    def get_event_log(self, provider: str, event_id: str) -> Optional[Dict[str, Any]]:
        return _public(_copy(self.tables['event_log'].get((provider, event_id))))

    def record_event(self, provider: str, event_id: str, kind: str,
                     org_id: Optional[str], outcome: str) -> Dict[str, Any]:
        self._writable()
        key = (provider, event_id)
        if key in self.tables['event_log']:
            raise DuplicateEventError(provider, event_id)
        row = {
            'id': self._next_seq(),
            'provider': provider,
            'event_id': event_id,
            'kind': kind,
            'org_id': org_id,
            'outcome': outcome,
            'created_at': utcnow(),
        }
        self.tables['event_log'][key] = row
        return _copy(row)

    # -- pending orders ----------------------------------------------------

    def insert_pending_order(self, org_id: Optional[str], tenant_id: Optional[str], provider: str,
                             plan_code: str, caps: Dict[str, Optional[int]],
                             flags: Optional[Dict[str, Any]] = None, warnings=None) -> Dict[str, Any]:
        self._writable()
        row = {
            'id': str(uuid.uuid4()),
            'org_id': org_id,
            'tenant_id': tenant_id,
            'provider': provider,
            'plan_code': plan_code,
            'active_user_cap': caps.get('active_user_cap'),
            'storage_gb_cap': caps.get('storage_gb_cap'),
            'messaging_cap': caps.get('messaging_cap'),
            'seat_cap': caps.get('seat_cap'),
            'site_cap': caps.get('site_cap'),
            'checkout_id': None,
            'subscription_id': None,
            'customer_id': None,
            'status': 'PENDING',
            'flags': copy.deepcopy(flags) if flags else None,
            'warnings': list(warnings or []),
            'created_at': utcnow(),
            'completed_at': None,
            '_seq': self._next_seq(),
        }
        self.tables['pending_orders'][row['id']] = row
        return _public(_copy(row))

    def set_pending_order_checkout(self, order_id: str, checkout_id: str) -> Optional[Dict[str, Any]]:
        self._writable()
        row = self.tables['pending_orders'].get(order_id)
        if row is None:
            return None
        row['checkout_id'] = checkout_id
        return _public(_copy(row))

    def get_pending_order(self, order_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        return _public(_copy(self.tables['pending_orders'].get(order_id)))

    def _find_order(self, predicate) -> Optional[Dict[str, Any]]:
        matches = [row for row in self.tables['pending_orders'].values() if predicate(row)]
        return _public(_newest(matches, 'created_at'))

    def find_pending_order_by_checkout(self, provider: str, checkout_id: str,
                                       for_update: bool = False) -> Optional[Dict[str, Any]]:
        return self._find_order(
            lambda row: row['provider'] == provider and row['checkout_id'] == checkout_id
        )

    def find_open_pending_order_by_subscription(self, provider: str, subscription_id: str,
                                                for_update: bool = False) -> Optional[Dict[str, Any]]:
        return self._find_order(
            lambda row: (row['provider'] == provider and row['subscription_id'] == subscription_id
                         and row['status'] == 'PENDING')
        )

    def complete_pending_order(self, order_id: str, org_id: Optional[str], subscription_id: Optional[str],
                               customer_id: Optional[str], checkout_id: Optional[str],
                               completed_at: datetime) -> bool:
        self._writable()
        row = self.tables['pending_orders'].get(order_id)
        if row is None or row['status'] != 'PENDING':
            return False
        row['status'] = 'COMPLETED'
        row['completed_at'] = completed_at
        row['org_id'] = row['org_id'] or org_id
        row['subscription_id'] = subscription_id or row['subscription_id']
        row['customer_id'] = customer_id or row['customer_id']
        row['checkout_id'] = row['checkout_id'] or checkout_id
        return True

    # -- subscriptions -----------------------------------------------------

    def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Optional[Dict[str, Any]]:
        return _public(_copy(self.tables['subscriptions'].get(provider_subscription_id)))

    def upsert_subscription(self, org_id: str, provider: str, provider_subscription_id: str,
                            plan_code: Optional[str], status: str, period_start: datetime,
                            period_end: datetime, cancel_at_period_end: bool,
                            customer_id: Optional[str] = None) -> Dict[str, Any]:
        self._writable()
        now = utcnow()
        row = self.tables['subscriptions'].get(provider_subscription_id)
        if row is None:
            row = {
                'id': str(uuid.uuid4()),
                'org_id': org_id,
                'provider': provider,
                'provider_subscription_id': provider_subscription_id,
                'customer_id': customer_id,
                'plan_code': plan_code or 'unknown',
                'created_at': now,
                '_seq': self._next_seq(),
            }
            self.tables['subscriptions'][provider_subscription_id] = row
        else:
            row['plan_code'] = plan_code or row['plan_code']
            row['customer_id'] = customer_id or row['customer_id']
        row['status'] = status
        row['period_start'] = period_start
        row['period_end'] = period_end
        row['cancel_at_period_end'] = cancel_at_period_end
        row['updated_at'] = now
        return _public(_copy(row))

    def _org_subscriptions(self, org_id: str) -> List[Dict[str, Any]]:
        return [row for row in self.tables['subscriptions'].values() if row['org_id'] == org_id]

    def latest_subscription(self, org_id: str) -> Optional[Dict[str, Any]]:
        return _public(_newest(self._org_subscriptions(org_id), 'period_end'))

    def find_live_subscription(self, org_id: str) -> Optional[Dict[str, Any]]:
        live = [row for row in self._org_subscriptions(org_id) if row['status'] in ('ACTIVE', 'PAST_DUE')]
        return _public(_newest(live, 'period_end'))

    # -- snapshots and usage (append only) ---------------------------------

    def insert_snapshot(self, org_id: str, caps: Dict[str, Optional[int]],
                        flags: Optional[Dict[str, Any]], source: str) -> Dict[str, Any]:
        self._writable()
        seq = self._next_seq()
        row = {
            'id': seq,
            'org_id': org_id,
            'active_user_cap': caps.get('active_user_cap'),
            'seat_cap': caps.get('seat_cap'),
            'storage_gb_cap': caps.get('storage_gb_cap'),
            'site_cap': caps.get('site_cap'),
            'flags': copy.deepcopy(flags) if flags else None,
            'source': source,
            'created_at': utcnow(),
            '_seq': seq,
        }
        self.tables['snapshots'].append(row)
        return _public(_copy(row))

    def latest_snapshot(self, org_id: str) -> Optional[Dict[str, Any]]:
        rows = [row for row in self.tables['snapshots'] if row['org_id'] == org_id]
        return _public(_newest(rows, 'created_at'))

    def count_snapshots(self, org_id: str) -> int:
        return sum(1 for row in self.tables['snapshots'] if row['org_id'] == org_id)

    def insert_usage_counters(self, org_id: str, active_users: Optional[int], storage_gb: Optional[float],
                              messages_month: Optional[int], calculated_at: datetime) -> Dict[str, Any]:
        self._writable()
        seq = self._next_seq()
        row = {
            'id': seq,
            'org_id': org_id,
            'active_users': active_users,
            'storage_gb': storage_gb,
            'messages_month': messages_month,
            'calculated_at': calculated_at,
            '_seq': seq,
        }
        self.tables['usage'].append(row)
        return _public(_copy(row))

    def latest_usage(self, org_id: str) -> Optional[Dict[str, Any]]:
        rows = [row for row in self.tables['usage'] if row['org_id'] == org_id]
        return _public(_newest(rows, 'calculated_at'))


class MemoryStore:
    """Process-local billing storage with all-or-nothing transactions."""

    def __init__(self):
        self._tables = _empty_tables()
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self, read_only: bool = False):
        with self._lock:
            if read_only:
                yield MemoryUnit(self._tables, read_only=True)
                return
            working = copy.deepcopy(self._tables)
            yield MemoryUnit(working)
            self._tables = working

    def create_schema(self):
        """Nothing to create; kept for parity with PostgresStore."""

    def close(self):
        with self._lock:
            self._tables = _empty_tables()

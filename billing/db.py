"""
Billing Database Functions
Owner: CC2
Workstream: W2P2

PostgreSQL storage for the reconciliation pipeline:
- pending_orders: checkout intents awaiting a webhook
- subscriptions: one row per provider subscription id
- entitlement_snapshots: append-only effective caps per org
- usage_counters: append-only usage measurements (written by the batch job)
- billing_event_log: every (provider, event_id) ever applied or ignored

Helpers take a RealDictCursor and return plain dicts. The caller owns the
transaction; see PostgresStore.transaction().
"""

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, Dict, Any

import psycopg2
import psycopg2.extras
import psycopg2.pool

from .errors import DuplicateEventError, StorageUnavailableError


SCHEMA_STATEMENTS = [
    ('Create pending_orders table', '''
CREATE TABLE IF NOT EXISTS pending_orders (
  id UUID PRIMARY KEY,
  org_id VARCHAR(255),
  tenant_id VARCHAR(255),
  provider VARCHAR(32) NOT NULL,
  plan_code VARCHAR(64) NOT NULL,
  active_user_cap INTEGER,
  storage_gb_cap INTEGER,
  messaging_cap INTEGER,
  seat_cap INTEGER,
  site_cap INTEGER,
  checkout_id VARCHAR(255),
  subscription_id VARCHAR(255),
  customer_id VARCHAR(255),
  status VARCHAR(16) NOT NULL DEFAULT 'PENDING',
  flags JSONB,
  warnings JSONB DEFAULT '[]',
  created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
  completed_at TIMESTAMPTZ
)'''),

    ('Index pending_orders by checkout handle',
     'CREATE INDEX IF NOT EXISTS idx_pending_orders_checkout ON pending_orders(provider, checkout_id)'),

    ('Index pending_orders by subscription',
     'CREATE INDEX IF NOT EXISTS idx_pending_orders_subscription ON pending_orders(provider, subscription_id)'),

    ('Create subscriptions table', '''
CREATE TABLE IF NOT EXISTS subscriptions (
  id UUID PRIMARY KEY,
  org_id VARCHAR(255) NOT NULL,
  provider VARCHAR(32) NOT NULL,
  provider_subscription_id VARCHAR(255) NOT NULL UNIQUE,
  customer_id VARCHAR(255),
  plan_code VARCHAR(64) NOT NULL,
  status VARCHAR(16) NOT NULL,
  period_start TIMESTAMPTZ NOT NULL,
  period_end TIMESTAMPTZ NOT NULL,
  cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
  created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
  updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)'''),

    ('Index subscriptions by org',
     'CREATE INDEX IF NOT EXISTS idx_subscriptions_org ON subscriptions(org_id, period_end DESC)'),

    ('Create entitlement_snapshots table', '''
CREATE TABLE IF NOT EXISTS entitlement_snapshots (
  id BIGSERIAL PRIMARY KEY,
  org_id VARCHAR(255) NOT NULL,
  active_user_cap INTEGER,
  seat_cap INTEGER,
  storage_gb_cap INTEGER,
  site_cap INTEGER,
  flags JSONB,
  source VARCHAR(32) NOT NULL,
  created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
)'''),

    ('Index entitlement_snapshots by org',
     'CREATE INDEX IF NOT EXISTS idx_snapshots_org ON entitlement_snapshots(org_id, created_at DESC)'),

    ('Create usage_counters table', '''
CREATE TABLE IF NOT EXISTS usage_counters (
  id BIGSERIAL PRIMARY KEY,
  org_id VARCHAR(255) NOT NULL,
  active_users INTEGER,
  storage_gb DOUBLE PRECISION,
  messages_month INTEGER,
  calculated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)'''),

    ('Index usage_counters by org',
     'CREATE INDEX IF NOT EXISTS idx_usage_org ON usage_counters(org_id, calculated_at DESC)'),

    ('Create billing_event_log table', '''
CREATE TABLE IF NOT EXISTS billing_event_log (
  id BIGSERIAL PRIMARY KEY,
  provider VARCHAR(32) NOT NULL,
  event_id VARCHAR(255) NOT NULL,
  kind VARCHAR(64) NOT NULL,
  org_id VARCHAR(255),
  outcome VARCHAR(32) NOT NULL,
  created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
  UNIQUE (provider, event_id)
)'''),
]


def _one(cur) -> Optional[Dict[str, Any]]:
    row = cur.fetchone()
    return dict(row) if row else None


def _lock(sql: str, for_update: bool) -> str:
    return sql + ' FOR UPDATE' if for_update else sql


# ---------------------------------------------------------------------------
# Billing event log
# ---------------------------------------------------------------------------

def get_event_log(cur, provider: str, event_id: str) -> Optional[Dict[str, Any]]:
    cur.execute(
        'SELECT * FROM billing_event_log WHERE provider = %s AND event_id = %s',
        (provider, event_id)
    )
    return _one(cur)


def record_event(cur, provider: str, event_id: str, kind: str,
                 org_id: Optional[str], outcome: str) -> Dict[str, Any]:
    """
    Write the event log row.

    Raises:
        DuplicateEventError: (provider, event_id) already recorded
    """
    cur.execute(
        '''INSERT INTO billing_event_log (provider, event_id, kind, org_id, outcome)
           VALUES (%s, %s, %s, %s, %s)
           ON CONFLICT (provider, event_id) DO NOTHING
           RETURNING *''',
        (provider, event_id, kind, org_id, outcome)
    )
    row = _one(cur)
    if row is None:
        raise DuplicateEventError(provider, event_id)
    return row


# ---------------------------------------------------------------------------
# Pending orders
# ---------------------------------------------------------------------------

def insert_pending_order(cur, org_id: Optional[str], tenant_id: Optional[str], provider: str,
                         plan_code: str, caps: Dict[str, Optional[int]],
                         flags: Optional[Dict[str, Any]] = None, warnings=None) -> Dict[str, Any]:
    cur.execute(
        '''INSERT INTO pending_orders
           (id, org_id, tenant_id, provider, plan_code, active_user_cap, storage_gb_cap,
            messaging_cap, seat_cap, site_cap, status, flags, warnings)
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'PENDING', %s, %s)
           RETURNING *''',
        (str(uuid.uuid4()), org_id, tenant_id, provider, plan_code,
         caps.get('active_user_cap'), caps.get('storage_gb_cap'), caps.get('messaging_cap'),
         caps.get('seat_cap'), caps.get('site_cap'),
         psycopg2.extras.Json(flags) if flags else None,
         psycopg2.extras.Json(list(warnings or [])))
    )
    return _one(cur)


def set_pending_order_checkout(cur, order_id: str, checkout_id: str) -> Optional[Dict[str, Any]]:
    cur.execute(
        'UPDATE pending_orders SET checkout_id = %s WHERE id = %s RETURNING *',
        (checkout_id, order_id)
    )
    return _one(cur)


def get_pending_order(cur, order_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
    try:
        uuid.UUID(str(order_id))
    except ValueError:
        return None  # not one of ours; the id column is a UUID
    cur.execute(_lock('SELECT * FROM pending_orders WHERE id = %s', for_update), (order_id,))
    return _one(cur)


def find_pending_order_by_checkout(cur, provider: str, checkout_id: str,
                                   for_update: bool = False) -> Optional[Dict[str, Any]]:
    cur.execute(
        _lock('''SELECT * FROM pending_orders
                 WHERE provider = %s AND checkout_id = %s
                 ORDER BY created_at DESC LIMIT 1''', for_update),
        (provider, checkout_id)
    )
    return _one(cur)


def find_open_pending_order_by_subscription(cur, provider: str, subscription_id: str,
                                            for_update: bool = False) -> Optional[Dict[str, Any]]:
    cur.execute(
        _lock('''SELECT * FROM pending_orders
                 WHERE provider = %s AND subscription_id = %s AND status = 'PENDING'
                 ORDER BY created_at DESC LIMIT 1''', for_update),
        (provider, subscription_id)
    )
    return _one(cur)


def complete_pending_order(cur, order_id: str, org_id: Optional[str], subscription_id: Optional[str],
                           customer_id: Optional[str], checkout_id: Optional[str],
                           completed_at: datetime) -> bool:
    """
    Mark a pending order COMPLETED.

    Returns:
        False if the order was already COMPLETED (nothing updated)
    """
    cur.execute(
        '''UPDATE pending_orders SET
               status = 'COMPLETED',
               completed_at = %s,
               org_id = COALESCE(org_id, %s),
               subscription_id = COALESCE(%s, subscription_id),
               customer_id = COALESCE(%s, customer_id),
               checkout_id = COALESCE(checkout_id, %s)
           WHERE id = %s AND status = 'PENDING'
           RETURNING id''',
        (completed_at, org_id, subscription_id, customer_id, checkout_id, order_id)
    )
    return cur.fetchone() is not None


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

def get_subscription_by_provider_id(cur, provider_subscription_id: str) -> Optional[Dict[str, Any]]:
    cur.execute(
        'SELECT * FROM subscriptions WHERE provider_subscription_id = %s',
        (provider_subscription_id,)
    )
    return _one(cur)


def upsert_subscription(cur, org_id: str, provider: str, provider_subscription_id: str,
                        plan_code: Optional[str], status: str, period_start: datetime,
                        period_end: datetime, cancel_at_period_end: bool,
                        customer_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Create or update the subscription row for a provider subscription id.

    An update keeps the existing plan code and customer when the event has none.
    """
    cur.execute(
        '''INSERT INTO subscriptions
           (id, org_id, provider, provider_subscription_id, customer_id, plan_code, status,
            period_start, period_end, cancel_at_period_end)
           VALUES (%(id)s, %(org_id)s, %(provider)s, %(sub_id)s, %(customer_id)s,
                   COALESCE(%(plan_code)s, 'unknown'), %(status)s,
                   %(period_start)s, %(period_end)s, %(cancel)s)
           ON CONFLICT (provider_subscription_id) DO UPDATE SET
               plan_code = COALESCE(%(plan_code)s, subscriptions.plan_code),
               customer_id = COALESCE(%(customer_id)s, subscriptions.customer_id),
               status = EXCLUDED.status,
               period_start = EXCLUDED.period_start,
               period_end = EXCLUDED.period_end,
               cancel_at_period_end = EXCLUDED.cancel_at_period_end,
               updated_at = NOW()
           RETURNING *''',
        {
            'id': str(uuid.uuid4()),
            'org_id': org_id,
            'provider': provider,
            'sub_id': provider_subscription_id,
            'customer_id': customer_id,
            'plan_code': plan_code,
            'status': status,
            'period_start': period_start,
            'period_end': period_end,
            'cancel': cancel_at_period_end,
        }
    )
    return _one(cur)


def latest_subscription(cur, org_id: str) -> Optional[Dict[str, Any]]:
    cur.execute(
        '''SELECT * FROM subscriptions WHERE org_id = %s
           ORDER BY period_end DESC, updated_at DESC LIMIT 1''',
        (org_id,)
    )
    return _one(cur)


def find_live_subscription(cur, org_id: str) -> Optional[Dict[str, Any]]:
    cur.execute(
        '''SELECT * FROM subscriptions
           WHERE org_id = %s AND status IN ('ACTIVE', 'PAST_DUE')
           ORDER BY period_end DESC LIMIT 1''',
        (org_id,)
    )
    return _one(cur)


# ---------------------------------------------------------------------------
# Entitlement snapshots and usage counters (append only)
# ---------------------------------------------------------------------------

def insert_snapshot(cur, org_id: str, caps: Dict[str, Optional[int]],
                    flags: Optional[Dict[str, Any]], source: str) -> Dict[str, Any]:
    cur.execute(
        '''INSERT INTO entitlement_snapshots
           (org_id, active_user_cap, seat_cap, storage_gb_cap, site_cap, flags, source)
           VALUES (%s, %s, %s, %s, %s, %s, %s)
           RETURNING *''',
        (org_id, caps.get('active_user_cap'), caps.get('seat_cap'), caps.get('storage_gb_cap'),
         caps.get('site_cap'), psycopg2.extras.Json(flags) if flags else None, source)
    )
    return _one(cur)


def latest_snapshot(cur, org_id: str) -> Optional[Dict[str, Any]]:
    cur.execute(
        '''SELECT * FROM entitlement_snapshots WHERE org_id = %s
           ORDER BY created_at DESC, id DESC LIMIT 1''',
        (org_id,)
    )
    return _one(cur)


def count_snapshots(cur, org_id: str) -> int:
    cur.execute('SELECT COUNT(*) AS cnt FROM entitlement_snapshots WHERE org_id = %s', (org_id,))
    row = cur.fetchone()
    return row['cnt'] if row else 0


def insert_usage_counters(cur, org_id: str, active_users: Optional[int], storage_gb: Optional[float],
                          messages_month: Optional[int], calculated_at: datetime) -> Dict[str, Any]:
    cur.execute(
        '''INSERT INTO usage_counters (org_id, active_users, storage_gb, messages_month, calculated_at)
           VALUES (%s, %s, %s, %s, %s)
           RETURNING *''',
        (org_id, active_users, storage_gb, messages_month, calculated_at)
    )
    return _one(cur)


def latest_usage(cur, org_id: str) -> Optional[Dict[str, Any]]:
    cur.execute(
        '''SELECT * FROM usage_counters WHERE org_id = %s
           ORDER BY calculated_at DESC, id DESC LIMIT 1''',
        (org_id,)
    )
    return _one(cur)


# Helpers a unit of work exposes as methods (cursor bound)
UNIT_OPERATIONS = {
    fn.__name__: fn for fn in (
        get_event_log, record_event,
        insert_pending_order, set_pending_order_checkout, get_pending_order,
        find_pending_order_by_checkout, find_open_pending_order_by_subscription,
        complete_pending_order,
        get_subscription_by_provider_id, upsert_subscription, latest_subscription,
        find_live_subscription,
        insert_snapshot, latest_snapshot, count_snapshots,
        insert_usage_counters, latest_usage,
    )
}


class PostgresUnit:
    """One transaction's view of the billing tables."""

    def __init__(self, cur):
        self.cur = cur

    def __getattr__(self, name):
        fn = UNIT_OPERATIONS.get(name)
        if fn is None:
            raise AttributeError(name)
        return lambda *args, **kwargs: fn(self.cur, *args, **kwargs)


class PostgresStore:
    """
    Connection-pooled billing storage.

    Args:
        database_url: libpq connection string
        connect_timeout: seconds to wait for a connection
        statement_timeout_ms: per-statement timeout set on every connection
        max_connections: pool size
    """

    def __init__(self, database_url: str, connect_timeout: int = 10,
                 statement_timeout_ms: int = 5000, max_connections: int = 10):
        self.pool = psycopg2.pool.ThreadedConnectionPool(
            1, max_connections, database_url,
            connect_timeout=connect_timeout,
            options=f'-c statement_timeout={int(statement_timeout_ms)}',
        )

    @contextmanager
    def transaction(self, read_only: bool = False):
        """
        Run a unit of work in one database transaction.

        Commits when the block exits cleanly, rolls back on any exception.
        Connection failures and statement timeouts become StorageUnavailableError.
        read_only runs the block as a READ ONLY transaction.
        """
        try:
            conn = self.pool.getconn()
        except psycopg2.OperationalError as e:
            raise StorageUnavailableError(f'Database unavailable: {e}')
        try:
            with conn:
                cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    if read_only:
                        cur.execute('SET TRANSACTION READ ONLY')
                    yield PostgresUnit(cur)
                finally:
                    cur.close()
        except psycopg2.OperationalError as e:
            raise StorageUnavailableError(f'Database error: {e}')
        finally:
            self.pool.putconn(conn, close=bool(conn.closed))

    def create_schema(self):
        with self.transaction() as unit:
            for description, sql in SCHEMA_STATEMENTS:
                unit.cur.execute(sql)
                print(f"[BILLING] Schema: {description}", flush=True)

    def close(self):
        self.pool.closeall()

#!/usr/bin/env python3
"""Create the billing reconciliation tables in Postgres"""

import os
import sys

import psycopg2

from billing.db import SCHEMA_STATEMENTS

BILLING_TABLES = (
    'pending_orders',
    'subscriptions',
    'entitlement_snapshots',
    'usage_counters',
    'billing_event_log',
)


def main():
    database_url = os.environ.get('DATABASE_URL')
    if not database_url:
        print("DATABASE_URL is not set", file=sys.stderr)
        return 1

    print("Connecting to Postgres...")
    conn = psycopg2.connect(database_url, connect_timeout=int(os.environ.get('DB_CONNECT_TIMEOUT', 10)))
    conn.autocommit = True
    cur = conn.cursor()

    print("Running schema...\n")
    success_count = 0
    error_count = 0

    for desc, sql in SCHEMA_STATEMENTS:
        print(f"  {desc}...", end=" ")
        try:
            cur.execute(sql)
            print("OK")
            success_count += 1
        except psycopg2.Error as e:
            print(f"ERROR: {e}")
            error_count += 1

    print(f"\nSchema execution complete! {success_count} succeeded, {error_count} errors")

    # Verify tables
    cur.execute(
        "SELECT table_name FROM information_schema.tables "
        "WHERE table_schema = 'public' AND table_name = ANY(%s) ORDER BY table_name",
        (list(BILLING_TABLES),)
    )
    tables = [row[0] for row in cur.fetchall()]
    print(f"\nBilling tables present: {tables}")

    cur.close()
    conn.close()
    print("\nConnection closed.")
    return 1 if error_count else 0


if __name__ == '__main__':
    sys.exit(main())

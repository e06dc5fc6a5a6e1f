from datetime import timedelta

import pytest

from billing.errors import DuplicateEventError
from billing.events import utcnow
from billing.memory import MemoryStore

CAPS = {'active_user_cap': 100, 'storage_gb_cap': None, 'messaging_cap': 500,
        'seat_cap': None, 'site_cap': 1}


def test_failed_transaction_leaves_no_partial_state(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as unit:
            unit.insert_snapshot('org-1', CAPS, None, 'webhook')
            unit.record_event('fake', 'evt_1', 'invoice.paid', 'org-1', 'applied')
            raise RuntimeError('boom')

    with store.transaction() as unit:
        assert unit.count_snapshots('org-1') == 0
        assert unit.get_event_log('fake', 'evt_1') is None


def test_event_log_is_unique_per_provider(store):
    with store.transaction() as unit:
        unit.record_event('fake', 'evt_1', 'invoice.paid', 'org-1', 'applied')
        unit.record_event('stripe', 'evt_1', 'invoice.paid', 'org-1', 'applied')

    with pytest.raises(DuplicateEventError):
        with store.transaction() as unit:
            unit.record_event('fake', 'evt_1', 'invoice.paid', 'org-1', 'applied')


def test_pending_order_completes_once(store):
    with store.transaction() as unit:
        order = unit.insert_pending_order('org-1', 't-1', 'fake', 'STARTER_MONTHLY', CAPS)
        assert order['status'] == 'PENDING'
        assert order['checkout_id'] is None
        assert 'seq' not in order and '_seq' not in order

    with store.transaction() as unit:
        assert unit.complete_pending_order(order['id'], None, 'sub_1', 'cus_1', None, utcnow())
        assert not unit.complete_pending_order(order['id'], None, 'sub_2', None, None, utcnow())
        stored = unit.get_pending_order(order['id'])

    assert stored['status'] == 'COMPLETED'
    assert stored['subscription_id'] == 'sub_1'
    assert stored['org_id'] == 'org-1'


def test_returned_rows_are_copies(store):
    with store.transaction() as unit:
        order = unit.insert_pending_order('org-1', None, 'fake', 'STARTER_MONTHLY', CAPS)
    order['status'] = 'COMPLETED'
    with store.transaction() as unit:
        assert unit.get_pending_order(order['id'])['status'] == 'PENDING'


def test_latest_snapshot_breaks_ties_by_insert_order(store):
    with store.transaction() as unit:
        unit.insert_snapshot('org-1', dict(CAPS, active_user_cap=10), None, 'webhook')
        unit.insert_snapshot('org-1', dict(CAPS, active_user_cap=20), None, 'webhook')
        unit.insert_snapshot('org-2', dict(CAPS, active_user_cap=30), None, 'webhook')
        assert unit.latest_snapshot('org-1')['active_user_cap'] == 20
        assert unit.count_snapshots('org-1') == 2


def test_subscription_upsert_keeps_plan_when_missing(store):
    now = utcnow()
    with store.transaction() as unit:
        created = unit.upsert_subscription('org-1', 'fake', 'sub_1', None, 'ACTIVE', now, now, False)
        assert created['plan_code'] == 'unknown'
        unit.upsert_subscription('org-1', 'fake', 'sub_1', 'GROWTH_MONTHLY', 'ACTIVE', now, now, False)
        updated = unit.upsert_subscription('org-1', 'fake', 'sub_1', None, 'PAST_DUE', now,
                                           now + timedelta(days=30), True)

    assert updated['id'] == created['id']
    assert updated['plan_code'] == 'GROWTH_MONTHLY'
    assert updated['status'] == 'PAST_DUE'
    assert updated['cancel_at_period_end'] is True


def test_latest_subscription_orders_by_period_end(store):
    now = utcnow()
    with store.transaction() as unit:
        unit.upsert_subscription('org-1', 'fake', 'sub_old', 'STARTER_MONTHLY', 'CANCELED',
                                 now - timedelta(days=60), now - timedelta(days=30), False)
        unit.upsert_subscription('org-1', 'fake', 'sub_new', 'GROWTH_MONTHLY', 'ACTIVE',
                                 now, now + timedelta(days=30), False)
        assert unit.latest_subscription('org-1')['provider_subscription_id'] == 'sub_new'
        assert unit.find_live_subscription('org-1')['plan_code'] == 'GROWTH_MONTHLY'
        assert unit.latest_subscription('org-2') is None


def test_close_discards_everything():
    store = MemoryStore()
    with store.transaction() as unit:
        unit.insert_snapshot('org-1', CAPS, None, 'webhook')
    store.close()
    with store.transaction() as unit:
        assert unit.latest_snapshot('org-1') is None


def test_read_only_transaction_reads_live_tables(store, monkeypatch):
    with store.transaction() as unit:
        unit.insert_snapshot('org-1', CAPS, None, 'webhook')

    def no_copy(*args, **kwargs):
        raise AssertionError('read-only transaction copied the tables')

    monkeypatch.setattr('billing.memory.copy.deepcopy', no_copy)
    with store.transaction(read_only=True) as unit:
        assert unit.count_snapshots('org-1') == 1


def test_read_only_transaction_rejects_writes(store):
    with pytest.raises(RuntimeError):
        with store.transaction(read_only=True) as unit:
            unit.record_event('fake', 'evt_1', 'invoice.paid', 'org-1', 'applied')

    with store.transaction(read_only=True) as unit:
        assert unit.get_event_log('fake', 'evt_1') is None

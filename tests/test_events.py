from datetime import datetime, timezone

import pytest

from billing.events import (
    BillingEvent,
    EventKind,
    SubscriptionStatus,
    parse_kind,
    parse_status,
    parse_timestamp,
)


def test_parse_kind_falls_back_to_unknown():
    assert parse_kind('invoice.paid') == EventKind.INVOICE_PAID
    assert parse_kind('customer.discount.created') == EventKind.UNKNOWN
    assert parse_kind(None) == EventKind.UNKNOWN


@pytest.mark.parametrize('raw, expected', [
    ('active', SubscriptionStatus.ACTIVE),
    (' PAST_DUE ', SubscriptionStatus.PAST_DUE),
    ('canceled', SubscriptionStatus.CANCELED),
    ('paused', None),
    (3, None),
    (None, None),
])
def test_parse_status(raw, expected):
    assert parse_status(raw) == expected


def test_parse_timestamp_forms():
    expected = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp(1704067200) == expected
    assert parse_timestamp('2024-01-01T00:00:00Z') == expected
    assert parse_timestamp('2024-01-01T00:00:00') == expected
    assert parse_timestamp(datetime(2024, 1, 1)) == expected


@pytest.mark.parametrize('raw', [None, '', 'yesterday', True, [1]])
def test_parse_timestamp_rejects_junk(raw):
    assert parse_timestamp(raw) is None


def test_inline_entitlements_need_every_field():
    full = {'active_user_cap': 10, 'seat_cap': None, 'storage_gb_cap': 5, 'site_cap': 1}
    partial = {'active_user_cap': 10}

    assert BillingEvent('fake', 'evt_1', EventKind.INVOICE_PAID, entitlements=full).has_full_inline_entitlements()
    assert not BillingEvent('fake', 'evt_1', EventKind.INVOICE_PAID, entitlements=partial).has_full_inline_entitlements()
    assert not BillingEvent('fake', 'evt_1', EventKind.INVOICE_PAID).has_full_inline_entitlements()


def test_with_org_returns_copy():
    event = BillingEvent('fake', 'evt_1', EventKind.SUBSCRIPTION_CREATED)
    assert event.with_org('org-9').org_id == 'org-9'
    assert event.org_id is None

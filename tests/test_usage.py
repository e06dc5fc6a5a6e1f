import pytest

from billing.enforce import EnforcementEvaluator
from billing.usage import build_usage_summary, record_usage_counters, usage_percentage


@pytest.mark.parametrize('current, cap, expected', [
    (25, 50, 50.0),
    (0, 50, 0.0),
    (None, 50, 0.0),
    (75, 50, 100),
    (10, None, 0),
    (10, 0, 0),
    (1, 3, 33.3),
])
def test_usage_percentage(current, cap, expected):
    assert usage_percentage(current, cap) == expected


def test_record_usage_counters_appends(store):
    first = record_usage_counters(store, 'org-1', active_users=10)
    second = record_usage_counters(store, 'org-1', active_users=12, storage_gb=2.5, messages_month=40)

    assert first['id'] != second['id']
    assert first['calculated_at'] is not None
    with store.transaction() as unit:
        assert unit.latest_usage('org-1')['active_users'] == 12


def test_usage_summary(resolver, store, seed_subscription):
    seed_subscription('GROWTH_MONTHLY')
    record_usage_counters(store, 'org-1', active_users=100, storage_gb=3.0)

    resolved = resolver.resolve('org-1')
    enforcement = EnforcementEvaluator(resolver).evaluate(resolved)
    summary = build_usage_summary(resolved, enforcement)

    assert summary['caps']['active_user_cap'] == 200
    assert summary['usage']['current_active_users'] == 100
    assert summary['percentages'] == {'active_users': 50.0, 'storage': 0, 'messages': 0}
    assert summary['enforcement']['tier'] == 'OK'
    assert summary['source'] == 'plan_catalogue'

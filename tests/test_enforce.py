from datetime import datetime, timedelta, timezone

import pytest
from flask import Flask, jsonify

from auth import require_jwt
from billing.config import EnforcementThresholds
from billing.enforce import (
    EnforcementEvaluator,
    EnforcementTier,
    check_active_user_cap,
    classify,
)
from billing.errors import HardCapExceeded, StorageUnavailableError
from billing.events import utcnow
from billing.usage import record_usage_counters

DEFAULTS = EnforcementThresholds()
CALCULATED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize('usage, expected', [
    (0, EnforcementTier.OK),
    (99, EnforcementTier.OK),
    (100, EnforcementTier.SOFT_CAP),
    (109, EnforcementTier.SOFT_CAP),
    (110, EnforcementTier.GRACE),
    (119, EnforcementTier.GRACE),
    (120, EnforcementTier.HARD_CAP),
    (500, EnforcementTier.HARD_CAP),
])
def test_threshold_boundaries(usage, expected):
    assert classify('org-1', usage, 100, CALCULATED_AT, DEFAULTS).tier == expected


@pytest.mark.parametrize('cap', [None, 0, -5])
def test_missing_cap_is_ok_without_cap(cap):
    result = classify('org-1', 1000, cap, CALCULATED_AT, DEFAULTS)
    assert result.tier == EnforcementTier.OK
    assert result.message_code == 'av30.no_cap'


def test_missing_usage_counts_as_zero():
    result = classify('org-1', None, 100, None, DEFAULTS)
    assert result.tier == EnforcementTier.OK
    assert result.ratio == 0


def test_grace_deadline_from_usage_calculation():
    result = classify('org-1', 115, 100, CALCULATED_AT, DEFAULTS)
    assert result.message_code == 'av30.grace'
    assert result.grace_until == CALCULATED_AT + timedelta(days=14)


def test_grace_deadline_null_without_calculation_time():
    assert classify('org-1', 115, 100, None, DEFAULTS).grace_until is None


def test_only_grace_carries_deadline():
    assert classify('org-1', 105, 100, CALCULATED_AT, DEFAULTS).grace_until is None
    assert classify('org-1', 130, 100, CALCULATED_AT, DEFAULTS).grace_until is None


def test_configured_thresholds():
    thresholds = EnforcementThresholds(soft_ratio=0.8, grace_ratio=0.9, hard_ratio=1.0, grace_days=3)
    assert classify('org-1', 85, 100, CALCULATED_AT, thresholds).tier == EnforcementTier.SOFT_CAP
    result = classify('org-1', 95, 100, CALCULATED_AT, thresholds)
    assert result.tier == EnforcementTier.GRACE
    assert result.grace_until == CALCULATED_AT + timedelta(days=3)
    assert classify('org-1', 100, 100, CALCULATED_AT, thresholds).tier == EnforcementTier.HARD_CAP


def test_assert_within_hard_cap_blocks_only_hard_cap(resolver):
    evaluator = EnforcementEvaluator(resolver)
    for usage in (50, 105, 115):
        evaluator.assert_within_hard_cap(classify('org-1', usage, 100, CALCULATED_AT, DEFAULTS))

    with pytest.raises(HardCapExceeded) as exc:
        evaluator.assert_within_hard_cap(classify('org-1', 120, 100, CALCULATED_AT, DEFAULTS))
    assert exc.value.org_id == 'org-1'
    assert exc.value.to_dict()['limit'] == 100


def test_check_usage_for_org_reads_resolved_state(resolver, store, seed_subscription):
    seed_subscription('STARTER_MONTHLY')
    calculated_at = utcnow()
    record_usage_counters(store, 'org-1', active_users=56, calculated_at=calculated_at)

    result = EnforcementEvaluator(resolver).check_usage_for_org('org-1')

    assert result.tier == EnforcementTier.GRACE
    assert result.cap == 50
    assert result.usage == 56
    assert result.grace_until == calculated_at + timedelta(days=14)


def test_org_without_usage_is_ok(resolver, seed_subscription):
    seed_subscription('STARTER_MONTHLY')
    result = EnforcementEvaluator(resolver).check_usage_for_org('org-1')
    assert result.tier == EnforcementTier.OK
    assert result.grace_until is None


# =============================================================================
# Route decorator
# =============================================================================

def guarded_app(evaluator):
    app = Flask(__name__)

    @app.route('/invite', methods=['POST'])
    @require_jwt
    @check_active_user_cap(evaluator)
    def invite():
        return jsonify({'invited': True})

    return app


def test_decorator_blocks_hard_cap(resolver, store, seed_subscription, auth_headers):
    seed_subscription('STARTER_MONTHLY')
    record_usage_counters(store, 'org-1', active_users=60)

    response = guarded_app(EnforcementEvaluator(resolver)).test_client().post('/invite', headers=auth_headers)

    assert response.status_code == 402
    body = response.get_json()
    assert body['error'] == 'av30.hard_cap'
    assert body['org_id'] == 'org-1'
    assert body['current'] == 60
    assert body['limit'] == 50
    assert body['upgrade_url'].endswith('/v2/billing/checkout')


def test_decorator_passes_advisory_tiers_with_header(resolver, store, seed_subscription, auth_headers):
    seed_subscription('STARTER_MONTHLY')
    record_usage_counters(store, 'org-1', active_users=52)

    response = guarded_app(EnforcementEvaluator(resolver)).test_client().post('/invite', headers=auth_headers)

    assert response.status_code == 200
    assert response.get_json() == {'invited': True}
    assert response.headers['X-Enforcement-Tier'] == 'SOFT_CAP'


class DownResolver:
    def resolve(self, org_id):
        raise StorageUnavailableError('database unavailable')


def test_decorator_fails_open_when_storage_is_down(auth_headers):
    response = guarded_app(EnforcementEvaluator(DownResolver())).test_client().post('/invite', headers=auth_headers)
    assert response.status_code == 200

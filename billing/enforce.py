"""
Active User Enforcement
Owner: CC2
Workstream: W2P4

Classifies an org's active-user usage against its cap:

    ratio = usage / cap
    cap missing or <= 0   OK (no cap)
    ratio < soft          OK
    [soft, grace)         SOFT_CAP
    [grace, hard)         GRACE until last usage calculation + grace days
    ratio >= hard         HARD_CAP

Only HARD_CAP blocks. Everything else is advisory.
"""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from functools import wraps
from typing import Optional, Dict, Any

from flask import jsonify, g, make_response

from .config import EnforcementThresholds
from .errors import HardCapExceeded, StorageUnavailableError

# Base URL for upgrade links
BASE_URL = os.environ.get('BASE_URL', 'http://localhost:3000')


class EnforcementTier(str, Enum):
    OK = 'OK'
    SOFT_CAP = 'SOFT_CAP'
    GRACE = 'GRACE'
    HARD_CAP = 'HARD_CAP'


MESSAGE_CODES = {
    EnforcementTier.OK: 'av30.ok',
    EnforcementTier.SOFT_CAP: 'av30.soft_cap',
    EnforcementTier.GRACE: 'av30.grace',
    EnforcementTier.HARD_CAP: 'av30.hard_cap',
}
NO_CAP_MESSAGE = 'av30.no_cap'


@dataclass(frozen=True)
class EnforcementResult:
    org_id: str
    tier: EnforcementTier
    message_code: str
    usage: Optional[int]
    cap: Optional[int]
    ratio: Optional[float] = None
    grace_until: Optional[datetime] = None

    @property
    def blocked(self) -> bool:
        return self.tier == EnforcementTier.HARD_CAP

    def to_dict(self) -> Dict[str, Any]:
        return {
            'org_id': self.org_id,
            'tier': self.tier.value,
            'message_code': self.message_code,
            'usage': self.usage,
            'cap': self.cap,
            'ratio': round(self.ratio, 4) if self.ratio is not None else None,
            'grace_until': self.grace_until.isoformat() if self.grace_until else None,
        }


def classify(org_id: str, usage: Optional[int], cap: Optional[int],
             usage_calculated_at: Optional[datetime],
             thresholds: EnforcementThresholds) -> EnforcementResult:
    """Pure tier calculation from usage, cap and thresholds."""
    if cap is None or cap <= 0:
        return EnforcementResult(org_id, EnforcementTier.OK, NO_CAP_MESSAGE, usage, cap)

    ratio = (usage or 0) / cap
    grace_until = None

    if ratio < thresholds.soft_ratio:
        tier = EnforcementTier.OK
    elif ratio < thresholds.grace_ratio:
        tier = EnforcementTier.SOFT_CAP
    elif ratio < thresholds.hard_ratio:
        tier = EnforcementTier.GRACE
        if usage_calculated_at is not None:
            grace_until = usage_calculated_at + timedelta(days=thresholds.grace_days)
    else:
        tier = EnforcementTier.HARD_CAP

    return EnforcementResult(org_id, tier, MESSAGE_CODES[tier], usage, cap, ratio, grace_until)


class EnforcementEvaluator:
    """
    Args:
        resolver: EntitlementResolver
        thresholds: Ratios and grace window (see config.load_thresholds)
    """

    def __init__(self, resolver, thresholds: EnforcementThresholds = None):
        self.resolver = resolver
        self.thresholds = thresholds or EnforcementThresholds()

    def evaluate(self, resolved) -> EnforcementResult:
        return classify(
            resolved.org_id,
            resolved.current_active_users,
            resolved.active_user_cap,
            resolved.usage_calculated_at,
            self.thresholds,
        )

    def check_usage_for_org(self, org_id: str) -> EnforcementResult:
        result = self.evaluate(self.resolver.resolve(org_id))
        if result.tier != EnforcementTier.OK:
            print(f"[BILLING] Active user {result.tier.value}: org={org_id}, "
                  f"usage={result.usage}/{result.cap}", flush=True)
        return result

    def assert_within_hard_cap(self, result: EnforcementResult):
        """
        Raises:
            HardCapExceeded: tier is HARD_CAP
        """
        if result.blocked:
            raise HardCapExceeded(result.org_id, result.usage, result.cap)


def limit_exceeded_response(result: EnforcementResult):
    """
    Generate a 402 Payment Required response with upgrade info.

    Args:
        result: HARD_CAP enforcement result

    Returns:
        Flask response tuple (jsonify, status_code)
    """
    body = HardCapExceeded(result.org_id, result.usage, result.cap).to_dict()
    body.update({
        'limit_type': 'active_users',
        'message': f'Active user limit reached ({result.usage}/{result.cap}). Upgrade to continue.',
        'upgrade_url': f"{BASE_URL}/v2/billing/checkout",
    })
    return jsonify(body), 402


def check_active_user_cap(evaluator: EnforcementEvaluator):
    """
    Decorator factory to block a route when the caller's org is at HARD_CAP.

    Expects require_jwt to have run first (org id from g.current_user).
    Other tiers pass through with an X-Enforcement-Tier header.

    Args:
        evaluator: EnforcementEvaluator

    Returns:
        Decorator function
    """
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            org_id = (getattr(g, 'current_user', None) or {}).get('org_id')
            if not org_id:
                return f(*args, **kwargs)

            try:
                result = evaluator.check_usage_for_org(org_id)
            except StorageUnavailableError as e:
                print(f"[BILLING] Error checking active user cap: {e}", flush=True)
                # Fail open while storage is down
                return f(*args, **kwargs)

            if result.blocked:
                print(f"[BILLING] Active user hard cap hit: org={org_id}, usage={result.usage}/{result.cap}", flush=True)
                return limit_exceeded_response(result)

            response = make_response(f(*args, **kwargs))
            response.headers['X-Enforcement-Tier'] = result.tier.value
            return response

        return decorated
    return decorator

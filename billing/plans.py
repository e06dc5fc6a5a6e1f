"""
Plan Catalogue
Owner: CC2
Workstream: W2P1

Plan tiers:
- Core: single site, 15 active users (AV30), 4 active classes
- Starter: single site, 50 active users
- Growth: up to 3 sites, 200 active users
- Enterprise: bespoke caps, contact sales (not self-serve)

A null cap means "no limit from the catalogue".
"""

from dataclasses import dataclass
from typing import Optional, Dict, List


@dataclass(frozen=True)
class PlanDefinition:
    code: str
    tier: str
    display_name: str
    billing_period: str  # 'monthly', 'yearly' or 'none'
    self_serve: bool
    active_users_included: Optional[int]
    storage_gb_included: Optional[int]
    messages_included: Optional[int]
    seats_included: Optional[int]
    sites_included: Optional[int]
    max_active_classes: Optional[int] = None
    enterprise_only: bool = False

    def caps(self) -> Dict[str, Optional[int]]:
        """Catalogue caps keyed the way previews and snapshots key them."""
        return {
            'active_user_cap': self.active_users_included,
            'storage_gb_cap': self.storage_gb_included,
            'messaging_cap': self.messages_included,
            'seat_cap': self.seats_included,
            'site_cap': self.sites_included,
        }

    def to_dict(self) -> Dict:
        return {
            'code': self.code,
            'tier': self.tier,
            'display_name': self.display_name,
            'billing_period': self.billing_period,
            'self_serve': self.self_serve,
            'max_active_classes': self.max_active_classes,
            'enterprise_only': self.enterprise_only,
            **self.caps(),
        }


def _core(code: str, period: str) -> PlanDefinition:
    return PlanDefinition(
        code=code, tier='core', display_name='Core', billing_period=period,
        self_serve=True, active_users_included=15, storage_gb_included=None,
        messages_included=None, seats_included=None, sites_included=1,
        max_active_classes=4,
    )


def _starter(code: str, period: str) -> PlanDefinition:
    return PlanDefinition(
        code=code, tier='starter', display_name='Starter', billing_period=period,
        self_serve=True, active_users_included=50, storage_gb_included=None,
        messages_included=None, seats_included=None, sites_included=1,
    )


def _growth(code: str, period: str) -> PlanDefinition:
    return PlanDefinition(
        code=code, tier='growth', display_name='Growth', billing_period=period,
        self_serve=True, active_users_included=200, storage_gb_included=None,
        messages_included=None, seats_included=None, sites_included=3,
    )


PLANS: Dict[str, PlanDefinition] = {
    'CORE_MONTHLY': _core('CORE_MONTHLY', 'monthly'),
    'CORE_YEARLY': _core('CORE_YEARLY', 'yearly'),
    # Provider-side aliases for Core; checkout always sends these
    'MINIMUM_MONTHLY': _core('MINIMUM_MONTHLY', 'monthly'),
    'MINIMUM_YEARLY': _core('MINIMUM_YEARLY', 'yearly'),
    'STARTER_MONTHLY': _starter('STARTER_MONTHLY', 'monthly'),
    'STARTER_YEARLY': _starter('STARTER_YEARLY', 'yearly'),
    'GROWTH_MONTHLY': _growth('GROWTH_MONTHLY', 'monthly'),
    'GROWTH_YEARLY': _growth('GROWTH_YEARLY', 'yearly'),
    'ENTERPRISE_CONTACT': PlanDefinition(
        code='ENTERPRISE_CONTACT', tier='enterprise',
        display_name='Enterprise (contact us)', billing_period='none',
        self_serve=False, active_users_included=None, storage_gb_included=None,
        messages_included=None, seats_included=None, sites_included=None,
        enterprise_only=True,
    ),
}

PLAN_ALIASES = {
    'CORE_MONTHLY': 'MINIMUM_MONTHLY',
    'CORE_YEARLY': 'MINIMUM_YEARLY',
}

TIER_ORDER = {
    'core': 1,
    'starter': 2,
    'growth': 3,
    'enterprise': 4,
}


def get_plan(plan_code: Optional[str]) -> Optional[PlanDefinition]:
    """
    Get a plan by code.

    Args:
        plan_code: The plan code ('STARTER_MONTHLY', ...)

    Returns:
        PlanDefinition or None if the code is empty or unknown
    """
    if not plan_code:
        return None
    return PLANS.get(plan_code.strip())


def normalize_plan_code(plan_code: Optional[str]) -> str:
    """Map CORE_* codes onto the MINIMUM_* codes the payment provider knows."""
    code = (plan_code or '').strip()
    return PLAN_ALIASES.get(code, code)


def tier_rank(tier: Optional[str]) -> Optional[int]:
    return TIER_ORDER.get(tier) if tier else None


def is_downgrade(current_code: Optional[str], new_code: Optional[str]) -> bool:
    """
    Check whether moving from one plan to another lowers the tier.

    An unknown current or new plan never counts as a downgrade.
    """
    current = get_plan(normalize_plan_code(current_code))
    new = get_plan(normalize_plan_code(new_code))
    if current is None or new is None:
        return False
    return tier_rank(new.tier) < tier_rank(current.tier)


def list_self_serve_plans() -> List[PlanDefinition]:
    """Plans a customer can buy without talking to sales, aliases excluded."""
    return [
        plan for code, plan in PLANS.items()
        if plan.self_serve and code not in PLAN_ALIASES.values()
    ]

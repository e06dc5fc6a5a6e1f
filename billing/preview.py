"""
Plan Preview Calculator
Owner: CC2
Workstream: W2P1

Combines catalogue base caps with add-on purchases into the effective caps
an org would get. Pure: no I/O, same input always gives the same output.
"""

import math
from typing import Optional, Dict, Any, Tuple

from .plans import get_plan, normalize_plan_code

# Buy Now UI sells active users in blocks of 25
ACTIVE_USER_BLOCK_SIZE = 25

CAP_FIELDS = ('active_user_cap', 'storage_gb_cap', 'messaging_cap', 'seat_cap', 'site_cap')

ADDON_FIELDS = {
    'extra_active_user_blocks': 'active_user_cap',
    'extra_storage_gb': 'storage_gb_cap',
    'extra_messages': 'messaging_cap',
    'extra_seats': 'seat_cap',
    'extra_sites': 'site_cap',
}

# A plan that is unlimited on these cannot be topped up; the add-on is dropped
ALL_OR_NOTHING = {
    'active_user_cap': 'extra_av30_ignored_for_unlimited_plan',
    'site_cap': 'extra_sites_ignored_for_unlimited_plan',
}


def is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def normalise_addon(value: Any) -> Tuple[int, bool]:
    """
    Normalise one add-on quantity.

    Returns:
        Tuple of (quantity, was_negative). Non-numbers count as 0.
    """
    if not is_number(value):
        return 0, False
    if value < 0:
        return 0, True
    return int(value), False


def null_safe_sum(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None and b is None:
        return None
    return (a or 0) + (b or 0)


def compute_addon_caps(addons: Dict[str, Any]) -> Tuple[Dict[str, Optional[int]], Optional[int], bool]:
    """Return (addon caps, active user blocks or None, any negative input)."""
    caps = {field: None for field in CAP_FIELDS}
    had_negative = False
    blocks = None

    for key, field in ADDON_FIELDS.items():
        quantity, negative = normalise_addon(addons.get(key))
        had_negative = had_negative or negative
        if quantity <= 0:
            continue
        if key == 'extra_active_user_blocks':
            blocks = quantity
            caps[field] = quantity * ACTIVE_USER_BLOCK_SIZE
        else:
            caps[field] = quantity

    return caps, blocks, had_negative


def preview(plan_code: Optional[str], addons: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Project the caps for a plan plus add-ons.

    Args:
        plan_code: Catalogue plan code; CORE_* is normalised to MINIMUM_*
        addons: Optional add-on quantities (see ADDON_FIELDS)

    Returns:
        Dictionary with base, addons, effective_caps and notes
    """
    code = normalize_plan_code(plan_code)
    plan = get_plan(code)
    addons = addons or {}

    base = plan.caps() if plan else {field: None for field in CAP_FIELDS}
    addon_caps, blocks, had_negative = compute_addon_caps(addons)

    warnings = ['price_not_included']
    source = 'plan_catalogue'
    if plan is None:
        source = 'unknown_plan'
        warnings.extend(['plan_not_in_catalogue', 'using_addons_only'])

    effective = {}
    for field in CAP_FIELDS:
        ignored_warning = ALL_OR_NOTHING.get(field)
        if plan is not None and ignored_warning and base[field] is None and (addon_caps[field] or 0) > 0:
            effective[field] = None
            warnings.append(ignored_warning)
            continue
        effective[field] = null_safe_sum(base[field], addon_caps[field])

    if had_negative:
        warnings.append('negative_addon_values_normalised_to_zero')

    addons_out = dict(addon_caps)
    addons_out['extra_active_user_blocks'] = blocks
    if any(value is not None for value in addons.values()):
        addons_out['raw_addons'] = dict(addons)

    return {
        'plan_code': code,
        'plan_tier': plan.tier if plan else None,
        'display_name': plan.display_name if plan else None,
        'billing_period': plan.billing_period if plan else None,
        'self_serve': plan.self_serve if plan else None,
        'base': base,
        'addons': addons_out,
        'effective_caps': effective,
        'notes': {'source': source, 'warnings': warnings},
    }

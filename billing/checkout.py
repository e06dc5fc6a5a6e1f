"""
Checkout Intent Writer
Owner: CC2
Workstream: W2P2

Turns a plan selection into a pending order plus a hosted checkout session.
The pending order records the caps the org was shown, so the webhook that
completes the purchase can grant exactly those.
"""

from typing import Optional, Dict, Any, List

from .errors import OrgContextError, PlanSelectionError
from .plans import get_plan, normalize_plan_code, is_downgrade
from .preview import ADDON_FIELDS, normalise_addon, is_number, preview


def sanitise_addons(plan_selection: Dict[str, Any]):
    """
    Pull add-on quantities out of a plan selection.

    Returns:
        Tuple of (addons, clamped). Non-numeric values are dropped,
        fractions truncated, negatives clamped to 0.
    """
    addons = {}
    clamped = False
    for key in ADDON_FIELDS:
        value = plan_selection.get(key)
        if not is_number(value):
            continue
        quantity, negative = normalise_addon(value)
        clamped = clamped or negative
        addons[key] = quantity
    return addons, clamped


def _dedupe(warnings: List[str]) -> List[str]:
    seen = []
    for warning in warnings:
        if warning not in seen:
            seen.append(warning)
    return seen


class CheckoutWriter:
    """
    Args:
        store: MemoryStore or PostgresStore
        provider: Payment provider (see providers.build_provider)
    """

    def __init__(self, store, provider):
        self.store = store
        self.provider = provider

    def _check_purchase_rules(self, unit, org_id: str, plan_code: str,
                              has_addons: bool) -> Dict[str, Any]:
        """Apply the purchase rules; return the live subscription's context."""
        plan = get_plan(plan_code)
        if plan is not None and not plan.self_serve:
            raise PlanSelectionError(f'Plan {plan_code} is not available for self-serve purchase')

        live = unit.find_live_subscription(org_id)
        if live is None:
            return {'addons_only': False, 'customer_id': None}

        current_code = normalize_plan_code(live['plan_code'])
        if current_code == plan_code:
            if not has_addons:
                raise PlanSelectionError(f'Organisation is already on {plan_code}')
            return {'addons_only': True, 'customer_id': live.get('customer_id')}

        if is_downgrade(current_code, plan_code):
            raise PlanSelectionError(f'Downgrade from {current_code} to {plan_code} is not supported')

        return {'addons_only': False, 'customer_id': live.get('customer_id')}

    def checkout(self, plan_selection: Dict[str, Any], org: Dict[str, Any],
                 success_url: Optional[str] = None, cancel_url: Optional[str] = None) -> Dict[str, Any]:
        """
        Record a checkout intent and open a provider checkout session.

        Args:
            plan_selection: {plan_code, extra_active_user_blocks?, extra_sites?, ...}
            org: {org_id, tenant_id?, user_id?, contact_email?}
            success_url: Redirect after payment (provider default when omitted)
            cancel_url: Redirect on abandon (provider default when omitted)

        Returns:
            {pending_order_id, preview, provider, session_id, session_url, warnings}

        Raises:
            OrgContextError: no org id
            PlanSelectionError: purchase rules rejected the selection
            ProviderUnavailableError: provider call failed (order stays PENDING)
        """
        org_id = (org or {}).get('org_id')
        if not org_id:
            raise OrgContextError('Checkout requires an organisation')
        tenant_id = org.get('tenant_id')

        plan_selection = plan_selection or {}
        plan_code = normalize_plan_code(plan_selection.get('plan_code'))
        if not plan_code:
            raise PlanSelectionError('plan_code is required')

        addons, clamped = sanitise_addons(plan_selection)
        has_addons = any(quantity > 0 for quantity in addons.values())

        projected = preview(plan_code, addons)
        warnings = list(projected['notes']['warnings'])
        if clamped:
            warnings.append('negative_addon_values_normalised_to_zero')
        if get_plan(plan_code) is None:
            warnings.append('unknown_plan_code')
        warnings = _dedupe(warnings)

        with self.store.transaction() as unit:
            context = self._check_purchase_rules(unit, org_id, plan_code, has_addons)

            flags = {'addons': addons}
            if projected['notes']['source'] != 'plan_catalogue':
                flags['source'] = projected['notes']['source']
            if context['addons_only']:
                flags['addons_only'] = True

            order = unit.insert_pending_order(
                org_id, tenant_id, self.provider.name, plan_code,
                projected['effective_caps'], flags=flags, warnings=warnings,
            )

        print(f"[CHECKOUT] Pending order {order['id']} org={org_id} plan={plan_code} "
              f"caps={projected['effective_caps']}", flush=True)

        params = {
            'pending_order_id': str(order['id']),
            'plan': dict(addons, plan_code=plan_code),
            'preview': projected['effective_caps'],
            'org': org,
            'user_id': org.get('user_id'),
            'customer_id': context['customer_id'],
            'success_url': success_url,
            'cancel_url': cancel_url,
            'addons_only': context['addons_only'],
        }
        session = self.provider.create_checkout_session(params, {'org_id': org_id, 'tenant_id': tenant_id})

        with self.store.transaction() as unit:
            unit.set_pending_order_checkout(str(order['id']), session['session_id'])

        return {
            'pending_order_id': str(order['id']),
            'preview': projected,
            'provider': session['provider'],
            'session_id': session['session_id'],
            'session_url': session['session_url'],
            'warnings': warnings,
        }

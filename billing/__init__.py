"""
Billing Module
Owner: CC2
Workstream: W2 (Billing & Entitlements)

This module handles:
- Plan catalogue and cap previews
- Checkout intents and payment provider webhooks
- Event reconciliation into subscriptions and entitlement snapshots
- Entitlement resolution and active-user enforcement
"""

from billing.plans import PLANS, get_plan, normalize_plan_code
from billing.preview import preview
from billing.events import BillingEvent, EventKind, SubscriptionStatus
from billing.errors import BillingError, HardCapExceeded
from billing.reconciler import Reconciler, ReconcileResult
from billing.entitlements import EntitlementResolver, ResolvedEntitlements
from billing.enforce import EnforcementEvaluator, EnforcementResult, EnforcementTier

__all__ = [
    'PLANS', 'get_plan', 'normalize_plan_code', 'preview',
    'BillingEvent', 'EventKind', 'SubscriptionStatus',
    'BillingError', 'HardCapExceeded',
    'Reconciler', 'ReconcileResult',
    'EntitlementResolver', 'ResolvedEntitlements',
    'EnforcementEvaluator', 'EnforcementResult', 'EnforcementTier',
]

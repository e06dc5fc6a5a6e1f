"""
Billing Event Reconciler
Owner: CC2
Workstream: W2P2

Applies normalized billing events to subscriptions, pending orders and
entitlement snapshots. Each (provider, event_id) is applied at most once:

- the event log is read before anything is touched (fast path)
- every mutation plus the event log row commit in one transaction, with
  the log row written last
- a duplicate that races past the read hits the event log's unique
  constraint, the transaction rolls back, and the caller sees
  ignored_duplicate

Nothing is retried here. Provider redelivery is the retry mechanism and
idempotency is what makes it safe.
"""

from dataclasses import dataclass
from typing import Optional, Dict, Any, Tuple

from .errors import DuplicateEventError, MalformedPayloadError, ReconciliationConflict
from .events import (
    BillingEvent,
    EventKind,
    PendingOrderStatus,
    SubscriptionStatus,
    utcnow,
)

OUTCOME_APPLIED = 'applied'
OUTCOME_IGNORED_UNKNOWN = 'ignored_unknown'

STATUS_OK = 'ok'
STATUS_IGNORED_DUPLICATE = 'ignored_duplicate'
STATUS_IGNORED_UNKNOWN = 'ignored_unknown'

_STATUS_FOR_OUTCOME = {
    OUTCOME_APPLIED: STATUS_OK,
    OUTCOME_IGNORED_UNKNOWN: STATUS_IGNORED_UNKNOWN,
}


@dataclass(frozen=True)
class ReconcileResult:
    status: str
    event_id: str
    prior_outcome: Optional[str] = None
    org_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body = {'status': self.status, 'event_id': self.event_id}
        if self.prior_outcome:
            body['prior_outcome'] = self.prior_outcome
        return body


# Handler method per event kind. Every EventKind must be listed.
HANDLERS = {
    EventKind.SUBSCRIPTION_CREATED: '_handle_active',
    EventKind.SUBSCRIPTION_UPDATED: '_handle_active',
    EventKind.INVOICE_PAID: '_handle_active',
    EventKind.SUBSCRIPTION_CANCELED: '_handle_canceled',
    EventKind.INVOICE_PAYMENT_FAILED: '_handle_payment_failed',
    EventKind.UNKNOWN: '_handle_unknown',
}

_unhandled = [kind.value for kind in EventKind if kind not in HANDLERS]
if _unhandled:
    raise RuntimeError(f"No reconcile handler for event kinds: {', '.join(_unhandled)}")


def _snapshot_caps(row: Dict[str, Any]) -> Dict[str, Optional[int]]:
    return {
        'active_user_cap': row.get('active_user_cap'),
        'seat_cap': row.get('seat_cap'),
        'storage_gb_cap': row.get('storage_gb_cap'),
        'site_cap': row.get('site_cap'),
    }


class Reconciler:
    """
    Args:
        store: MemoryStore or PostgresStore
        provider: Payment provider used to verify webhooks
        resolver: Optional EntitlementResolver warmed after applied events
    """

    def __init__(self, store, provider=None, resolver=None):
        self.store = store
        self.provider = provider
        self.resolver = resolver
        for kind, method in HANDLERS.items():
            if not callable(getattr(self, method, None)):
                raise RuntimeError(f'Reconciler has no handler {method} for {kind.value}')

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    def handle_webhook(self, raw_body, signature: Optional[str]) -> ReconcileResult:
        """
        Verify, parse and apply one webhook delivery.

        Raises:
            AuthenticationError: bad or missing signature
            MalformedPayloadError: body unusable
        """
        try:
            event = self.provider.verify_and_parse(raw_body, signature)
        except MalformedPayloadError as e:
            print(f"[WEBHOOK] MALFORMED PAYLOAD from {self.provider.name}: {e.message}", flush=True)
            raise

        print(f"[WEBHOOK] Received {event.provider}:{event.event_id} ({event.kind.value})", flush=True)
        result = self.apply(event)

        if result.status == STATUS_OK and result.org_id and self.resolver is not None:
            try:
                self.resolver.resolve(result.org_id)
            except Exception as e:
                # Best effort; the recorded outcome stands
                print(f"[WEBHOOK] Entitlement warm-up failed for org {result.org_id}: {e}", flush=True)

        return result

    def apply(self, event: BillingEvent) -> ReconcileResult:
        """
        Apply a billing event exactly once.

        Returns:
            ReconcileResult with status ok, ignored_duplicate or ignored_unknown

        Raises:
            MalformedPayloadError: the event's org cannot be resolved
            ReconciliationConflict: a pending order changed under us (rolled back)
            StorageUnavailableError: database unreachable (rolled back)
        """
        with self.store.transaction(read_only=True) as unit:
            prior = unit.get_event_log(event.provider, event.event_id)
        if prior is not None:
            print(f"[RECONCILE] Duplicate {event.provider}:{event.event_id} (was {prior['outcome']})", flush=True)
            return ReconcileResult(STATUS_IGNORED_DUPLICATE, event.event_id, prior['outcome'], prior.get('org_id'))

        handler = getattr(self, HANDLERS[event.kind])
        try:
            with self.store.transaction() as unit:
                outcome, org_id = handler(unit, event)
                unit.record_event(event.provider, event.event_id, event.kind.value, org_id, outcome)
        except DuplicateEventError:
            with self.store.transaction(read_only=True) as unit:
                prior = unit.get_event_log(event.provider, event.event_id)
            print(f"[RECONCILE] Concurrent duplicate {event.provider}:{event.event_id} rolled back", flush=True)
            return ReconcileResult(
                STATUS_IGNORED_DUPLICATE, event.event_id,
                prior['outcome'] if prior else None,
                prior.get('org_id') if prior else None,
            )

        return ReconcileResult(_STATUS_FOR_OUTCOME[outcome], event.event_id, None, org_id)

    # =========================================================================
    # HANDLERS (each returns (outcome, org_id))
    # =========================================================================

    def _handle_active(self, unit, event: BillingEvent) -> Tuple[str, str]:
        return self._apply_subscription_event(unit, event, event.status or SubscriptionStatus.ACTIVE)

    def _handle_canceled(self, unit, event: BillingEvent) -> Tuple[str, str]:
        return self._apply_subscription_event(unit, event, SubscriptionStatus.CANCELED)

    def _handle_payment_failed(self, unit, event: BillingEvent) -> Tuple[str, str]:
        self._require_subscription_id(event)
        existing = unit.get_subscription_by_provider_id(event.subscription_id)
        org_id = self._resolve_org(event, None, existing)
        status = event.status or SubscriptionStatus.PAST_DUE
        self._upsert_subscription(unit, event, org_id, status, None)
        print(f"[RECONCILE] Payment failed for {event.subscription_id} (org {org_id}) -> {status.value}", flush=True)
        return OUTCOME_APPLIED, org_id

    def _handle_unknown(self, unit, event: BillingEvent) -> Tuple[str, Optional[str]]:
        print(f"[RECONCILE] Ignoring unknown event kind {event.provider}:{event.event_id}", flush=True)
        return OUTCOME_IGNORED_UNKNOWN, event.org_id

    # =========================================================================
    # SUBSCRIPTION + PENDING ORDER FLOW
    # =========================================================================

    def _apply_subscription_event(self, unit, event: BillingEvent,
                                  status: SubscriptionStatus) -> Tuple[str, str]:
        self._require_subscription_id(event)
        order = self._find_pending_order(unit, event)
        existing = unit.get_subscription_by_provider_id(event.subscription_id)
        org_id = self._resolve_org(event, order, existing)

        self._upsert_subscription(unit, event, org_id, status, order)

        if order is None:
            self._snapshot_inline_entitlements(unit, event, org_id)
            return OUTCOME_APPLIED, org_id

        if order['status'] == PendingOrderStatus.COMPLETED.value:
            print(f"[RECONCILE] Pending order {order['id']} already completed; subscription updated only", flush=True)
            return OUTCOME_APPLIED, org_id

        self._complete_pending_order(unit, event, org_id, order)
        return OUTCOME_APPLIED, org_id

    def _require_subscription_id(self, event: BillingEvent):
        if not event.subscription_id:
            raise MalformedPayloadError(f'Event {event.provider}:{event.event_id} has no subscription id')

    def _find_pending_order(self, unit, event: BillingEvent) -> Optional[Dict[str, Any]]:
        """Explicit id first, then checkout handle, then an open order for the subscription."""
        if event.pending_order_id:
            order = unit.get_pending_order(event.pending_order_id, for_update=True)
            if order is not None:
                return order
        if event.checkout_id:
            order = unit.find_pending_order_by_checkout(event.provider, event.checkout_id, for_update=True)
            if order is not None:
                return order
        return unit.find_open_pending_order_by_subscription(event.provider, event.subscription_id, for_update=True)

    def _resolve_org(self, event: BillingEvent, order: Optional[Dict[str, Any]],
                     existing: Optional[Dict[str, Any]]) -> str:
        org_id = event.org_id or (order or {}).get('org_id') or (existing or {}).get('org_id')
        if not org_id:
            print(f"[RECONCILE] MALFORMED: no org for {event.provider}:{event.event_id}", flush=True)
            raise MalformedPayloadError(f'Cannot resolve organisation for event {event.event_id}')
        if order is not None and order.get('org_id') and order['org_id'] != org_id:
            print(f"[RECONCILE] WARNING: event org {org_id} differs from pending order org {order['org_id']}", flush=True)
        return org_id

    def _upsert_subscription(self, unit, event: BillingEvent, org_id: str,
                             status: SubscriptionStatus, order: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        now = utcnow()
        plan_code = event.plan_code or (order or {}).get('plan_code')
        row = unit.upsert_subscription(
            org_id, event.provider, event.subscription_id, plan_code, status.value,
            event.period_start or now,
            event.period_end or now,
            bool(event.cancel_at_period_end),
            customer_id=event.customer_id,
        )
        print(f"[RECONCILE] Subscription {event.subscription_id} org={org_id} "
              f"plan={row['plan_code']} status={status.value}", flush=True)
        return row

    def _complete_pending_order(self, unit, event: BillingEvent, org_id: str, order: Dict[str, Any]):
        flags = dict(order.get('flags') or {})
        flags['messaging_cap'] = order.get('messaging_cap')
        flags['pending_order_id'] = str(order['id'])
        flags['plan_code'] = order['plan_code']
        flags['warnings'] = list(order.get('warnings') or [])

        unit.insert_snapshot(org_id, _snapshot_caps(order), flags, 'pending_order')

        completed = unit.complete_pending_order(
            str(order['id']), org_id, event.subscription_id, event.customer_id,
            event.checkout_id, utcnow(),
        )
        if not completed:
            raise ReconciliationConflict(f"Pending order {order['id']} was completed concurrently")

        print(f"[RECONCILE] Pending order {order['id']} completed; snapshot from order "
              f"(active_user_cap={order.get('active_user_cap')})", flush=True)

    def _snapshot_inline_entitlements(self, unit, event: BillingEvent, org_id: str):
        if event.has_full_inline_entitlements():
            entitlements = event.entitlements
            flags = {'event_id': event.event_id}
            if 'messaging_cap' in entitlements:
                flags['messaging_cap'] = entitlements['messaging_cap']
            unit.insert_snapshot(org_id, _snapshot_caps(entitlements), flags, 'webhook')
            print(f"[RECONCILE] Snapshot from inline entitlements for org {org_id}", flush=True)
        elif event.entitlements:
            print(f"[RECONCILE] Partial inline entitlements on {event.event_id} discarded", flush=True)

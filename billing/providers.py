"""
Payment Providers
Owner: CC2
Workstream: W2P2

A payment provider does exactly two things:
- create_checkout_session(params, ctx): open a hosted checkout and return
  {provider, session_id, session_url}
- verify_and_parse(raw_body, signature): authenticate a webhook delivery
  and turn it into a BillingEvent

The provider is picked once at startup from BillingConfig.provider.
FakeProvider stands in wherever there is no real payment backend.
"""

import json
from typing import Optional, Dict, Any
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

import stripe

from .config import BillingConfig, ProviderKind
from .errors import (
    AuthenticationError,
    MalformedPayloadError,
    PlanSelectionError,
    ProviderUnavailableError,
    ConfigurationError,
)
from .events import (
    BillingEvent,
    EventKind,
    SubscriptionStatus,
    parse_kind,
    parse_status,
    parse_timestamp,
)

# Seconds a Stripe signature timestamp may lag behind our clock
STRIPE_SIGNATURE_TOLERANCE = 300


def _decode_body(raw_body) -> str:
    if isinstance(raw_body, (bytes, bytearray)):
        try:
            return raw_body.decode('utf-8')
        except UnicodeDecodeError:
            raise MalformedPayloadError('Webhook body is not UTF-8')
    return raw_body or ''


def _load_json(body: str) -> Dict[str, Any]:
    try:
        payload = json.loads(body)
    except ValueError:
        raise MalformedPayloadError('Invalid JSON payload')
    if not isinstance(payload, dict):
        raise MalformedPayloadError('Webhook payload must be a JSON object')
    return payload


def _with_query(url: str, params: Dict[str, str]) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query)
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def _id_of(value) -> Optional[str]:
    """Stripe expands some references into objects; accept either form."""
    if isinstance(value, dict):
        return value.get('id')
    return value or None


def correlation_metadata(params: Dict[str, Any], ctx: Dict[str, Any]) -> Dict[str, str]:
    """Metadata echoed back on every webhook so the reconciler can find the pending order."""
    preview = params.get('preview') or {}
    metadata = {
        'pending_order_id': params['pending_order_id'],
        'org_id': ctx.get('org_id') or '',
        'tenant_id': ctx.get('tenant_id') or '',
        'plan_code': params['plan']['plan_code'],
        'active_user_cap': '' if preview.get('active_user_cap') is None else str(preview['active_user_cap']),
        'site_cap': '' if preview.get('site_cap') is None else str(preview['site_cap']),
    }
    if params.get('user_id'):
        metadata['initiated_by_user_id'] = params['user_id']
    return metadata


# =============================================================================
# FAKE PROVIDER
# =============================================================================

class FakeProvider:
    """
    Provider for tests and local development.

    Webhooks must carry the configured fixed signature; the body is our
    own normalized JSON shape. Everything else behaves like a real provider.
    """

    kind = ProviderKind.FAKE
    name = 'fake'

    def __init__(self, config: BillingConfig):
        self.signature = config.fake_webhook_signature
        self.success_url_default = config.success_url_default
        self.cancel_url_default = config.cancel_url_default
        self.sessions: Dict[str, Dict[str, Any]] = {}

    def create_checkout_session(self, params: Dict[str, Any], ctx: Dict[str, Any]) -> Dict[str, str]:
        session_id = 'fake_sess_' + params['pending_order_id'].replace('-', '')
        success_url = params.get('success_url') or self.success_url_default
        self.sessions[session_id] = {
            'metadata': correlation_metadata(params, ctx),
            'success_url': success_url,
            'cancel_url': params.get('cancel_url') or self.cancel_url_default,
        }
        print(f"[CHECKOUT] Fake session {session_id} for org {ctx.get('org_id')}", flush=True)
        return {
            'provider': self.name,
            'session_id': session_id,
            'session_url': _with_query(success_url, {'session': session_id, 'provider': self.name}),
        }

    def verify_and_parse(self, raw_body, signature: Optional[str]) -> BillingEvent:
        if not signature or signature != self.signature:
            raise AuthenticationError('Invalid webhook signature')

        payload = _load_json(_decode_body(raw_body))
        missing = [key for key in ('event_id', 'type') if not payload.get(key)]
        if missing:
            raise MalformedPayloadError(f"Missing required webhook fields: {', '.join(missing)}")

        event_id = str(payload['event_id'])
        kind = parse_kind(payload['type'])
        if kind == EventKind.UNKNOWN:
            return BillingEvent(provider=self.name, event_id=event_id, kind=kind,
                                org_id=str(payload['org_id']) if payload.get('org_id') else None)

        missing = [key for key in ('org_id', 'subscription_id') if not payload.get(key)]
        if missing:
            raise MalformedPayloadError(f"Missing required webhook fields: {', '.join(missing)}")

        entitlements = payload.get('entitlements')
        cancel = payload.get('cancel_at_period_end')

        return BillingEvent(
            provider=self.name,
            event_id=event_id,
            kind=kind,
            org_id=str(payload['org_id']),
            subscription_id=str(payload['subscription_id']),
            pending_order_id=payload.get('pending_order_id') or None,
            checkout_id=payload.get('checkout_id') or None,
            customer_id=payload.get('customer_id') or None,
            plan_code=str(payload['plan_code']) if payload.get('plan_code') is not None else None,
            status=parse_status(payload.get('status')),
            period_start=parse_timestamp(payload.get('period_start')),
            period_end=parse_timestamp(payload.get('period_end')),
            cancel_at_period_end=bool(cancel) if cancel is not None else None,
            entitlements=entitlements if isinstance(entitlements, dict) else None,
        )


# =============================================================================
# STRIPE PROVIDER
# =============================================================================

STRIPE_STATUS_MAP = {
    'active': SubscriptionStatus.ACTIVE,
    'past_due': SubscriptionStatus.PAST_DUE,
    'unpaid': SubscriptionStatus.PAST_DUE,
    'canceled': SubscriptionStatus.CANCELED,
    'incomplete': SubscriptionStatus.INCOMPLETE,
    'incomplete_expired': SubscriptionStatus.INCOMPLETE,
    'trialing': SubscriptionStatus.TRIALING,
}


class StripeProvider:
    """Stripe Checkout sessions and snapshot webhooks."""

    kind = ProviderKind.STRIPE
    name = 'stripe'

    def __init__(self, config: BillingConfig):
        if not config.stripe_secret_key or not config.stripe_webhook_secret:
            raise ConfigurationError('Stripe provider requires STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET')
        self.api_key = config.stripe_secret_key
        self.webhook_secret = config.stripe_webhook_secret
        self.price_map = dict(config.stripe_price_map)
        self.success_url_default = config.success_url_default
        self.cancel_url_default = config.cancel_url_default

        stripe.api_key = self.api_key
        stripe.default_http_client = stripe.RequestsClient(timeout=config.provider_timeout_seconds)

    # -- checkout ----------------------------------------------------------

    def create_checkout_session(self, params: Dict[str, Any], ctx: Dict[str, Any]) -> Dict[str, str]:
        plan_code = params['plan']['plan_code']
        price_id = self.price_map.get(plan_code)
        if not price_id:
            print(f"[STRIPE] No price configured for plan {plan_code}; aborting checkout", flush=True)
            raise PlanSelectionError(f'Price configuration missing for plan {plan_code}')

        metadata = correlation_metadata(params, ctx)
        session_params = {
            'mode': 'subscription',
            'success_url': params.get('success_url') or self.success_url_default,
            'cancel_url': params.get('cancel_url') or self.cancel_url_default,
            'line_items': [{'price': price_id, 'quantity': 1}],
            'metadata': metadata,
            'subscription_data': {'metadata': metadata},
            'client_reference_id': params['pending_order_id'],
        }
        if params.get('customer_id'):
            session_params['customer'] = params['customer_id']
        elif (params.get('org') or {}).get('contact_email'):
            session_params['customer_email'] = params['org']['contact_email']

        try:
            session = stripe.checkout.Session.create(api_key=self.api_key, **session_params)
        except stripe.StripeError as e:
            print(f"[STRIPE] Checkout session creation failed: {e}", flush=True)
            raise ProviderUnavailableError(f'Stripe checkout failed: {e}')

        print(f"[STRIPE] Created checkout session {session.id} for org {ctx.get('org_id')} plan {plan_code}", flush=True)
        return {
            'provider': self.name,
            'session_id': session.id,
            'session_url': session.url or '',
        }

    # -- webhooks ----------------------------------------------------------

    def verify_and_parse(self, raw_body, signature: Optional[str]) -> BillingEvent:
        if not signature:
            raise AuthenticationError('Missing webhook signature')

        body = _decode_body(raw_body)
        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, tolerance=STRIPE_SIGNATURE_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            print(f"[STRIPE] Invalid signature: {e}", flush=True)
            raise AuthenticationError('Invalid webhook signature')

        payload = _load_json(body)
        if not payload.get('id') or not payload.get('type'):
            raise MalformedPayloadError('Stripe event missing id or type')

        obj = ((payload.get('data') or {}).get('object')) or {}
        mapper = {
            'checkout.session.completed': self._map_checkout_completed,
            'customer.subscription.created': self._map_subscription,
            'customer.subscription.updated': self._map_subscription,
            'customer.subscription.deleted': self._map_subscription,
            'invoice.paid': self._map_invoice,
            'invoice.payment_failed': self._map_invoice,
        }.get(payload['type'])

        if mapper is None:
            return BillingEvent(provider=self.name, event_id=payload['id'], kind=EventKind.UNKNOWN)

        event = mapper(payload['id'], payload['type'], obj)
        if not event.subscription_id:
            raise MalformedPayloadError(f"Stripe {payload['type']} event {payload['id']} has no subscription")
        return event

    def _map_checkout_completed(self, event_id: str, event_type: str, session: Dict[str, Any]) -> BillingEvent:
        metadata = session.get('metadata') or {}
        return BillingEvent(
            provider=self.name,
            event_id=event_id,
            kind=EventKind.SUBSCRIPTION_CREATED,
            org_id=metadata.get('org_id') or None,
            subscription_id=_id_of(session.get('subscription')),
            pending_order_id=metadata.get('pending_order_id') or session.get('client_reference_id') or None,
            checkout_id=session.get('id'),
            customer_id=_id_of(session.get('customer')),
            plan_code=metadata.get('plan_code') or None,
            status=SubscriptionStatus.ACTIVE,
        )

    def _map_subscription(self, event_id: str, event_type: str, sub: Dict[str, Any]) -> BillingEvent:
        metadata = sub.get('metadata') or {}
        items = ((sub.get('items') or {}).get('data')) or []
        first_item = items[0] if items else {}
        plan_code = metadata.get('plan_code') or ((first_item.get('price') or {}).get('nickname')) or None

        # Newer API versions carry the period on the subscription item
        period_start = sub.get('current_period_start') or first_item.get('current_period_start')
        period_end = sub.get('current_period_end') or first_item.get('current_period_end')

        canceled = event_type == 'customer.subscription.deleted'
        if canceled:
            kind = EventKind.SUBSCRIPTION_CANCELED
        elif event_type == 'customer.subscription.created':
            kind = EventKind.SUBSCRIPTION_CREATED
        else:
            kind = EventKind.SUBSCRIPTION_UPDATED

        return BillingEvent(
            provider=self.name,
            event_id=event_id,
            kind=kind,
            org_id=metadata.get('org_id') or None,
            subscription_id=sub.get('id'),
            pending_order_id=metadata.get('pending_order_id') or None,
            customer_id=_id_of(sub.get('customer')),
            plan_code=plan_code,
            status=SubscriptionStatus.CANCELED if canceled else STRIPE_STATUS_MAP.get(sub.get('status')),
            period_start=parse_timestamp(period_start),
            period_end=parse_timestamp(period_end),
            cancel_at_period_end=sub.get('cancel_at_period_end'),
        )

    def _map_invoice(self, event_id: str, event_type: str, invoice: Dict[str, Any]) -> BillingEvent:
        # Newer API versions moved the subscription under parent.subscription_details
        details = ((invoice.get('parent') or {}).get('subscription_details')) or {}
        metadata = dict(details.get('metadata') or {})
        metadata.update(invoice.get('metadata') or {})
        subscription_id = _id_of(invoice.get('subscription')) or _id_of(details.get('subscription'))

        failed = event_type == 'invoice.payment_failed'
        return BillingEvent(
            provider=self.name,
            event_id=event_id,
            kind=EventKind.INVOICE_PAYMENT_FAILED if failed else EventKind.INVOICE_PAID,
            org_id=metadata.get('org_id') or None,
            subscription_id=subscription_id,
            pending_order_id=metadata.get('pending_order_id') or None,
            checkout_id=metadata.get('checkout_id') or None,
            customer_id=_id_of(invoice.get('customer')),
            plan_code=metadata.get('plan_code') or None,
            status=SubscriptionStatus.PAST_DUE if failed else None,
        )


PROVIDERS = {
    ProviderKind.FAKE: FakeProvider,
    ProviderKind.STRIPE: StripeProvider,
}


def build_provider(config: BillingConfig):
    """Instantiate the provider selected by configuration."""
    provider = PROVIDERS[config.provider](config)
    print(f"[STARTUP] Billing provider: {provider.name}", flush=True)
    return provider

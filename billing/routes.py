"""
Billing Routes
Owner: CC2
Workstream: W2P2

POST /v2/billing/webhook       - Provider webhook (signature verified)
POST /v2/billing/checkout      - Start a checkout (JWT)
POST /v2/billing/preview       - Preview caps for a plan + add-ons
GET  /v2/billing/plans         - Self-serve plan catalogue
GET  /v2/billing/prices        - Provider prices (cached)
GET  /v2/billing/entitlements  - Resolved caps, usage and enforcement (JWT)
GET  /v2/billing/health        - Provider and configuration flags
"""

from flask import Blueprint, request, jsonify, g

from auth import require_jwt
from .errors import BillingError, MalformedPayloadError, OrgContextError
from .plans import list_self_serve_plans
from .preview import preview
from .usage import build_usage_summary

SIGNATURE_HEADERS = ('Stripe-Signature', 'X-Billing-Signature')


def _signature() -> str:
    for header in SIGNATURE_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return None


def _current_org() -> dict:
    user = getattr(g, 'current_user', None) or {}
    if not user.get('org_id'):
        raise OrgContextError('Token carries no organisation')
    return {
        'org_id': user['org_id'],
        'tenant_id': user.get('tenant_id'),
        'user_id': user.get('sub'),
        'contact_email': user.get('email'),
    }


def init_billing(service):
    """
    Build the billing blueprint around a BillingService.

    Returns:
        Blueprint to register on the app
    """
    billing_bp = Blueprint('billing', __name__, url_prefix='/v2/billing')

    @billing_bp.errorhandler(BillingError)
    def billing_error(e):
        if e.status_code >= 500:
            print(f"[BILLING] {e.code}: {e.message}", flush=True)
        return jsonify(e.to_dict()), e.status_code

    @billing_bp.route('/webhook', methods=['POST'])
    def webhook():
        """
        Receive a provider webhook.

        Returns 200 {status, event_id} for ok, ignored_duplicate and
        ignored_unknown. Verification failures are 401/400 so the
        provider retries; retryable failures are 503.
        """
        result = service.reconciler.handle_webhook(request.get_data(), _signature())
        return jsonify(result.to_dict()), 200

    @billing_bp.route('/checkout', methods=['POST'])
    @require_jwt
    def checkout():
        """
        Start a checkout for the caller's org.

        Request body:
            {"plan": {"plan_code": "STARTER_MONTHLY", "extra_active_user_blocks": 2},
             "success_url": "...", "cancel_url": "..."}
        """
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise MalformedPayloadError('JSON body required')

        plan = data.get('plan')
        if not isinstance(plan, dict):
            plan = {'plan_code': data.get('plan_code')}

        org = _current_org()
        if isinstance(data.get('org'), dict):
            org.update({k: v for k, v in data['org'].items() if k in ('contact_email', 'contact_name', 'org_name')})

        response = service.checkout.checkout(
            plan, org,
            success_url=data.get('success_url'),
            cancel_url=data.get('cancel_url'),
        )
        return jsonify(response), 201

    @billing_bp.route('/preview', methods=['POST'])
    def preview_caps():
        data = request.get_json(silent=True) or {}
        addons = data.get('addons') if isinstance(data.get('addons'), dict) else {}
        return jsonify(preview(data.get('plan_code'), addons))

    @billing_bp.route('/plans', methods=['GET'])
    def plans():
        return jsonify({'plans': [plan.to_dict() for plan in list_self_serve_plans()]})

    @billing_bp.route('/prices', methods=['GET'])
    def prices():
        force = request.args.get('refresh', '').lower() in ('1', 'true', 'yes')
        return jsonify(service.prices.list_prices(force_refresh=force))

    @billing_bp.route('/entitlements', methods=['GET'])
    @require_jwt
    def entitlements():
        org = _current_org()
        resolved = service.resolver.resolve(org['org_id'])
        enforcement = service.evaluator.evaluate(resolved)
        return jsonify(build_usage_summary(resolved, enforcement))

    @billing_bp.route('/health', methods=['GET'])
    def billing_health():
        """Health check for billing module."""
        config = service.config
        return jsonify({
            'status': 'ok',
            'module': 'billing',
            'provider': service.provider.name,
            'environment': config.app_env,
            'stripe_configured': bool(config.stripe_secret_key),
            'webhook_secret_configured': bool(config.stripe_webhook_secret),
            'price_map_entries': len(config.stripe_price_map),
            'database_configured': bool(config.database_url),
        })

    return billing_bp

#!/usr/bin/env python3
"""
Billing Entitlement API
Checkout intents, provider webhooks and entitlement resolution per organisation.

Run with:
    python app.py
    gunicorn 'app:create_app()'
"""

import os
import sys
from flask import Flask, jsonify
from flask_cors import CORS

from billing.config import load_config
from billing.errors import ConfigurationError
from billing.routes import init_billing
from billing.service import build_service


def create_app(config=None, store=None, provider=None):
    """
    Build the Flask app and every billing collaborator.

    Args:
        config: BillingConfig (loaded from the environment when omitted)
        store: Optional store override (tests)
        provider: Optional provider override (tests)

    Raises:
        ConfigurationError: unusable configuration; the process must not start
    """
    if config is None:
        config = load_config()

    print(f"[STARTUP] Billing provider={config.provider.value} env={config.app_env}", file=sys.stderr)

    app = Flask(__name__)
    CORS(app)

    service = build_service(config, store=store, provider=provider)
    app.config['BILLING_SERVICE'] = service

    # =========================================================================
    # BILLING (W2P2 - CC2)
    # =========================================================================

    app.register_blueprint(init_billing(service))

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({'status': 'ok', 'service': 'billing-entitlements'})

    return app


if __name__ == '__main__':
    try:
        app = create_app()
    except ConfigurationError as e:
        print(f"[STARTUP] FATAL: {e.message}", file=sys.stderr)
        sys.exit(1)
    port = int(os.environ.get('PORT', 8080))
    app.run(host='0.0.0.0', port=port, debug=False)

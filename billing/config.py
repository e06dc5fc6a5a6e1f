"""
Billing Configuration
Owner: CC2
Workstream: W2P5

Everything the billing module reads from the environment, loaded once at
startup. Problems surface here as ConfigurationError, never at request time.
"""

import os
import sys
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict

from .errors import ConfigurationError
from .plans import PLANS


class ProviderKind(str, Enum):
    FAKE = 'FAKE'
    STRIPE = 'STRIPE'


PRODUCTION_ENVS = ('production', 'prod')


@dataclass(frozen=True)
class EnforcementThresholds:
    soft_ratio: float = 1.0
    grace_ratio: float = 1.1
    hard_ratio: float = 1.2
    grace_days: int = 14


@dataclass(frozen=True)
class BillingConfig:
    provider: ProviderKind = ProviderKind.FAKE
    app_env: str = 'development'
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_map: Dict[str, str] = field(default_factory=dict)
    success_url_default: str = 'http://localhost:3000/billing/checkout/success'
    cancel_url_default: str = 'http://localhost:3000/billing/checkout/cancel'
    fake_webhook_signature: str = 'test-signature'
    thresholds: EnforcementThresholds = field(default_factory=EnforcementThresholds)
    provider_timeout_seconds: float = 10.0
    db_connect_timeout: int = 10
    db_statement_timeout_ms: int = 5000
    price_cache_ttl_seconds: int = 300
    database_url: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in PRODUCTION_ENVS


def parse_price_map(raw: Optional[str]) -> Dict[str, str]:
    """
    Parse STRIPE_PRICE_MAP ({"STARTER_MONTHLY": "price_..."}).

    Codes outside the catalogue are dropped. Bad JSON yields an empty map.
    """
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        print(f"[STARTUP] WARNING: STRIPE_PRICE_MAP is not valid JSON: {e}", file=sys.stderr)
        return {}
    if not isinstance(parsed, dict):
        print("[STARTUP] WARNING: STRIPE_PRICE_MAP must be a JSON object", file=sys.stderr)
        return {}
    return {code: str(price) for code, price in parsed.items() if code in PLANS and price}


def _number(env, name: str, default, cast):
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def load_thresholds(env=None) -> EnforcementThresholds:
    env = os.environ if env is None else env
    thresholds = EnforcementThresholds(
        soft_ratio=_number(env, 'ENFORCEMENT_SOFT_RATIO', 1.0, float),
        grace_ratio=_number(env, 'ENFORCEMENT_GRACE_RATIO', 1.1, float),
        hard_ratio=_number(env, 'ENFORCEMENT_HARD_RATIO', 1.2, float),
        grace_days=_number(env, 'ENFORCEMENT_GRACE_DAYS', 14, int),
    )
    if not (0 < thresholds.soft_ratio < thresholds.grace_ratio < thresholds.hard_ratio):
        raise ConfigurationError(
            'Enforcement ratios must be positive and strictly increasing '
            f'(soft={thresholds.soft_ratio}, grace={thresholds.grace_ratio}, hard={thresholds.hard_ratio})'
        )
    if thresholds.grace_days < 0:
        raise ConfigurationError('ENFORCEMENT_GRACE_DAYS must not be negative')
    return thresholds


def load_config(env=None) -> BillingConfig:
    """
    Build the billing configuration from environment variables.

    Args:
        env: Mapping to read from (defaults to os.environ)

    Returns:
        BillingConfig

    Raises:
        ConfigurationError: production-like environment without provider
            credentials, or unusable numeric settings
    """
    env = os.environ if env is None else env

    app_env = env.get('APP_ENV', 'development')
    is_prod = app_env.lower() in PRODUCTION_ENVS
    requested = (env.get('BILLING_PROVIDER') or 'FAKE').strip().upper()

    secret_key = env.get('STRIPE_SECRET_KEY') or None
    webhook_secret = env.get('STRIPE_WEBHOOK_SECRET') or None

    try:
        provider = ProviderKind(requested)
    except ValueError:
        print(f"[STARTUP] WARNING: billing provider {requested} not supported, using FAKE", file=sys.stderr)
        provider = ProviderKind.FAKE

    if provider == ProviderKind.STRIPE and not (secret_key and webhook_secret):
        if is_prod:
            raise ConfigurationError(
                'Stripe billing provider requires STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET in production'
            )
        print("[STARTUP] WARNING: Stripe credentials missing, falling back to FAKE provider", file=sys.stderr)
        provider = ProviderKind.FAKE

    success_default = env.get('BILLING_SUCCESS_URL_DEFAULT', 'http://localhost:3000/billing/checkout/success')
    cancel_default = env.get('BILLING_CANCEL_URL_DEFAULT', 'http://localhost:3000/billing/checkout/cancel')

    return BillingConfig(
        provider=provider,
        app_env=app_env,
        stripe_secret_key=secret_key,
        stripe_webhook_secret=webhook_secret,
        stripe_price_map=parse_price_map(env.get('STRIPE_PRICE_MAP')),
        success_url_default=success_default,
        cancel_url_default=cancel_default,
        fake_webhook_signature=env.get('FAKE_WEBHOOK_SIGNATURE', 'test-signature'),
        thresholds=load_thresholds(env),
        provider_timeout_seconds=_number(env, 'PROVIDER_TIMEOUT_SECONDS', 10.0, float),
        db_connect_timeout=_number(env, 'DB_CONNECT_TIMEOUT', 10, int),
        db_statement_timeout_ms=_number(env, 'DB_STATEMENT_TIMEOUT_MS', 5000, int),
        price_cache_ttl_seconds=_number(env, 'PRICE_CACHE_TTL_SECONDS', 300, int),
        database_url=env.get('DATABASE_URL') or None,
    )

"""
Shared fixtures: in-memory store, fake provider, billing services and a
Flask test client wired to them.
"""

import json
from datetime import timedelta

import pytest

from app import create_app
from auth import generate_jwt
from billing.checkout import CheckoutWriter
from billing.config import BillingConfig
from billing.entitlements import EntitlementResolver
from billing.events import BillingEvent, EventKind, utcnow
from billing.memory import MemoryStore
from billing.providers import FakeProvider
from billing.reconciler import Reconciler

ORG_ID = 'org-1'
TENANT_ID = 'tenant-1'
FAKE_SIGNATURE = 'test-signature'


@pytest.fixture
def config():
    return BillingConfig()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def provider(config):
    return FakeProvider(config)


@pytest.fixture
def resolver(store):
    return EntitlementResolver(store)


@pytest.fixture
def reconciler(store, provider, resolver):
    return Reconciler(store, provider, resolver)


@pytest.fixture
def checkout_writer(store, provider):
    return CheckoutWriter(store, provider)


@pytest.fixture
def org():
    return {'org_id': ORG_ID, 'tenant_id': TENANT_ID, 'user_id': 'user-1'}


@pytest.fixture
def make_event():
    """Build a fake-provider BillingEvent with sensible defaults."""
    def _make(event_id='evt_1', kind=EventKind.SUBSCRIPTION_CREATED, **fields):
        fields.setdefault('org_id', ORG_ID)
        fields.setdefault('subscription_id', 'sub_1')
        return BillingEvent(provider='fake', event_id=event_id, kind=kind, **fields)
    return _make


@pytest.fixture
def seed_subscription(store):
    """Insert a subscription row directly."""
    def _seed(plan_code, status='ACTIVE', org_id=ORG_ID, subscription_id='sub_seed', days=30):
        now = utcnow()
        with store.transaction() as unit:
            return unit.upsert_subscription(
                org_id, 'fake', subscription_id, plan_code, status,
                now, now + timedelta(days=days), False,
            )
    return _seed


@pytest.fixture
def app(config, store, provider):
    app = create_app(config, store=store, provider=provider)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers():
    token = generate_jwt('user-1', 'owner@example.com', org_id=ORG_ID, tenant_id=TENANT_ID)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def post_webhook(client):
    """POST a fake-provider webhook body."""
    def _post(payload, signature=FAKE_SIGNATURE):
        headers = {'Content-Type': 'application/json'}
        if signature is not None:
            headers['X-Billing-Signature'] = signature
        return client.post('/v2/billing/webhook', data=json.dumps(payload), headers=headers)
    return _post

from types import SimpleNamespace

import pytest
import stripe

from billing.config import BillingConfig, ProviderKind
from billing.pricing import PriceCatalogue


@pytest.fixture
def stripe_config():
    return BillingConfig(
        provider=ProviderKind.STRIPE,
        stripe_secret_key='sk_test_123',
        stripe_webhook_secret='whsec_123',
        stripe_price_map={'STARTER_MONTHLY': 'price_starter', 'GROWTH_MONTHLY': 'price_growth'},
    )


@pytest.fixture
def retrieve_calls(monkeypatch):
    calls = []

    def fake_retrieve(price_id, **kwargs):
        calls.append(price_id)
        if price_id == 'price_growth':
            raise stripe.InvalidRequestError('No such price', 'id')
        return SimpleNamespace(
            currency='gbp',
            unit_amount=4900,
            recurring=SimpleNamespace(interval='month', interval_count=1),
            product=SimpleNamespace(name='Starter', description='Single site'),
        )

    monkeypatch.setattr(stripe.Price, 'retrieve', fake_retrieve)
    return calls


def test_fake_provider_has_no_prices(config):
    data = PriceCatalogue(config).list_prices()
    assert data == {'provider': 'fake', 'prices': [], 'warnings': ['pricing_unavailable']}


def test_stripe_prices_with_failed_entry(stripe_config, retrieve_calls):
    data = PriceCatalogue(stripe_config).list_prices()

    assert data['provider'] == 'stripe'
    assert data['warnings'] == ['price_fetch_failed:GROWTH_MONTHLY']
    assert data['prices'] == [{
        'code': 'STARTER_MONTHLY',
        'price_id': 'price_starter',
        'currency': 'gbp',
        'unit_amount': 4900,
        'interval': 'month',
        'interval_count': 1,
        'product_name': 'Starter',
        'description': 'Single site',
    }]


def test_prices_are_cached_until_refresh(stripe_config, retrieve_calls):
    catalogue = PriceCatalogue(stripe_config)
    catalogue.list_prices()
    catalogue.list_prices()
    assert len(retrieve_calls) == 2

    catalogue.list_prices(force_refresh=True)
    assert len(retrieve_calls) == 4


def test_empty_price_map_is_unavailable():
    config = BillingConfig(provider=ProviderKind.STRIPE, stripe_secret_key='sk_test_123')
    assert PriceCatalogue(config).list_prices()['warnings'] == ['pricing_unavailable']

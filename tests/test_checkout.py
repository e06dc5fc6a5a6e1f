import pytest

from billing.checkout import CheckoutWriter, sanitise_addons
from billing.errors import OrgContextError, PlanSelectionError, ProviderUnavailableError


def stored_orders(store):
    return list(store._tables['pending_orders'].values())


def test_checkout_records_projected_caps(checkout_writer, store, provider, org):
    response = checkout_writer.checkout(
        {'plan_code': 'STARTER_MONTHLY', 'extra_active_user_blocks': 2}, org
    )

    assert response['provider'] == 'fake'
    assert response['preview']['effective_caps']['active_user_cap'] == 100
    assert 'price_not_included' in response['warnings']

    with store.transaction() as unit:
        order = unit.get_pending_order(response['pending_order_id'])
    assert order['status'] == 'PENDING'
    assert order['active_user_cap'] == 100
    assert order['site_cap'] == 1
    assert order['org_id'] == 'org-1'
    assert order['tenant_id'] == 'tenant-1'
    assert order['checkout_id'] == response['session_id']

    metadata = provider.sessions[response['session_id']]['metadata']
    assert metadata['pending_order_id'] == response['pending_order_id']


def test_success_url_is_passed_through(checkout_writer, org):
    response = checkout_writer.checkout(
        {'plan_code': 'GROWTH_MONTHLY'}, org, success_url='https://app.example.com/done?x=1'
    )
    assert response['session_url'].startswith('https://app.example.com/done?x=1&session=')


def test_addons_are_sanitised(org):
    addons, clamped = sanitise_addons({
        'plan_code': 'STARTER_MONTHLY',
        'extra_active_user_blocks': 2.9,
        'extra_sites': -1,
        'extra_seats': 'ten',
    })
    assert addons == {'extra_active_user_blocks': 2, 'extra_sites': 0}
    assert clamped


def test_non_finite_addons_are_dropped():
    addons, clamped = sanitise_addons({
        'plan_code': 'STARTER_MONTHLY',
        'extra_active_user_blocks': float('inf'),
        'extra_sites': float('-inf'),
        'extra_seats': 2,
    })
    assert addons == {'extra_seats': 2}
    assert not clamped


def test_negative_addons_warn(checkout_writer, org):
    response = checkout_writer.checkout({'plan_code': 'STARTER_MONTHLY', 'extra_sites': -3}, org)
    assert 'negative_addon_values_normalised_to_zero' in response['warnings']
    assert response['preview']['effective_caps']['site_cap'] == 1


def test_unknown_plan_warns_and_records_source(checkout_writer, store, org):
    response = checkout_writer.checkout({'plan_code': 'MYSTERY', 'extra_active_user_blocks': 2}, org)
    assert 'unknown_plan_code' in response['warnings']
    assert 'plan_not_in_catalogue' in response['warnings']
    order = stored_orders(store)[0]
    assert order['active_user_cap'] == 50
    assert order['flags']['source'] == 'unknown_plan'


def test_core_plan_is_normalised(checkout_writer, store, org):
    checkout_writer.checkout({'plan_code': 'CORE_MONTHLY'}, org)
    assert stored_orders(store)[0]['plan_code'] == 'MINIMUM_MONTHLY'


def test_enterprise_is_not_self_serve(checkout_writer, store, org):
    with pytest.raises(PlanSelectionError):
        checkout_writer.checkout({'plan_code': 'ENTERPRISE_CONTACT'}, org)
    assert stored_orders(store) == []


def test_same_plan_without_addons_is_rejected(checkout_writer, seed_subscription, org):
    seed_subscription('STARTER_MONTHLY')
    with pytest.raises(PlanSelectionError):
        checkout_writer.checkout({'plan_code': 'STARTER_MONTHLY'}, org)


def test_same_plan_with_addons_is_addons_only(checkout_writer, seed_subscription, store, org):
    seed_subscription('STARTER_MONTHLY')
    checkout_writer.checkout({'plan_code': 'STARTER_MONTHLY', 'extra_active_user_blocks': 1}, org)
    assert stored_orders(store)[0]['flags']['addons_only'] is True


def test_downgrade_is_rejected(checkout_writer, seed_subscription, org):
    seed_subscription('GROWTH_MONTHLY')
    with pytest.raises(PlanSelectionError):
        checkout_writer.checkout({'plan_code': 'STARTER_MONTHLY'}, org)


def test_canceled_org_may_buy_any_tier(checkout_writer, seed_subscription, org):
    seed_subscription('GROWTH_MONTHLY', status='CANCELED')
    response = checkout_writer.checkout({'plan_code': 'STARTER_MONTHLY'}, org)
    assert response['pending_order_id']


def test_upgrade_is_allowed(checkout_writer, seed_subscription, org):
    seed_subscription('STARTER_MONTHLY')
    response = checkout_writer.checkout({'plan_code': 'GROWTH_YEARLY'}, org)
    assert response['preview']['effective_caps']['active_user_cap'] == 200


def test_org_is_required(checkout_writer):
    with pytest.raises(OrgContextError):
        checkout_writer.checkout({'plan_code': 'STARTER_MONTHLY'}, {})


def test_plan_code_is_required(checkout_writer, org):
    with pytest.raises(PlanSelectionError):
        checkout_writer.checkout({}, org)


class DownProvider:
    name = 'fake'

    def create_checkout_session(self, params, ctx):
        raise ProviderUnavailableError('provider timed out')


def test_provider_failure_leaves_order_pending_without_handle(store, org):
    writer = CheckoutWriter(store, DownProvider())
    with pytest.raises(ProviderUnavailableError):
        writer.checkout({'plan_code': 'STARTER_MONTHLY'}, org)
    with pytest.raises(ProviderUnavailableError):
        writer.checkout({'plan_code': 'STARTER_MONTHLY'}, org)

    orders = stored_orders(store)
    assert len(orders) == 2
    assert all(order['status'] == 'PENDING' and order['checkout_id'] is None for order in orders)

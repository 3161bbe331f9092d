import stripe
import pytest

from billing_sync_svc.checkout import CheckoutOrchestrator, RedirectKind, resolve_price_id
from billing_sync_svc.exceptions import (
    BillingProviderUnavailable,
    InvalidPlan,
    NoBillingRelationship,
    UserNotFound,
)
from billing_sync_svc.models.subscription import Tier
from billing_sync_svc.subscription_store import SubscriptionStore

PLANS = {'monthly': 'price_monthly', 'yearly': 'price_yearly'}


@pytest.fixture
def orchestrator(db_session, fake_stripe):
    return CheckoutOrchestrator(db_session, fake_stripe, plans=PLANS)


def test_resolve_price_id_accepts_plan_names_and_price_ids():
    assert resolve_price_id('monthly', PLANS) == 'price_monthly'
    assert resolve_price_id('price_yearly', PLANS) == 'price_yearly'
    with pytest.raises(InvalidPlan):
        resolve_price_id('weekly', PLANS)
    with pytest.raises(InvalidPlan):
        resolve_price_id('  ', PLANS)


def test_resolve_price_id_passes_through_without_configured_plans():
    assert resolve_price_id('price_custom', {}) == 'price_custom'


def test_first_checkout_creates_record_customer_and_session(orchestrator, fake_stripe, db_session, user):
    result = orchestrator.start_checkout(user.id, 'monthly')

    assert result.kind == RedirectKind.CHECKOUT
    assert result.redirect_url == 'https://checkout.stripe.test/cs_1'
    assert len(fake_stripe.customers_created) == 1
    assert fake_stripe.customers_created[0]['email'] == 'reader@example.com'
    session = fake_stripe.checkout_sessions[0]
    assert session['price'] == 'price_monthly'
    assert session['metadata'] == {'user_id': user.id}

    record = SubscriptionStore(db_session).get(user.id)
    assert record.provider_customer_id == 'cus_1'
    # Checkout never advances the tier
    assert record.tier == Tier.FREE


def test_repeated_checkout_reuses_customer(orchestrator, fake_stripe, user):
    orchestrator.start_checkout(user.id, 'monthly')
    orchestrator.start_checkout(user.id, 'yearly')

    assert len(fake_stripe.customers_created) == 1
    assert [s['customer'] for s in fake_stripe.checkout_sessions] == ['cus_1', 'cus_1']


def test_active_subscription_redirects_to_portal(orchestrator, fake_stripe, db_session, user, make_subscription):
    store = SubscriptionStore(db_session)
    store.upsert_by_user_id(user.id, provider_customer_id='cus_A', tier=Tier.PAID, provider_subscription_id='sub_1')
    fake_stripe.subscriptions['sub_1'] = make_subscription('sub_1', 'cus_A', 2000000000, status='active')

    result = orchestrator.start_checkout(user.id, 'monthly')

    assert result.kind == RedirectKind.PORTAL
    assert result.redirect_url == 'https://billing.stripe.test/cus_A'
    assert fake_stripe.checkout_sessions == []
    assert fake_stripe.customers_created == []


def test_trialing_subscription_also_redirects_to_portal(orchestrator, fake_stripe, db_session, user, make_subscription):
    SubscriptionStore(db_session).upsert_by_user_id(user.id, provider_customer_id='cus_A', provider_subscription_id='sub_1')
    fake_stripe.subscriptions['sub_1'] = make_subscription('sub_1', 'cus_A', 2000000000, status='trialing')

    assert orchestrator.start_checkout(user.id, 'monthly').kind == RedirectKind.PORTAL


@pytest.mark.parametrize('remote', ['canceled', 'incomplete_expired', None])
def test_inactive_or_missing_subscription_starts_new_checkout(remote, orchestrator, fake_stripe, db_session, user,
                                                              make_subscription):
    SubscriptionStore(db_session).upsert_by_user_id(user.id, provider_customer_id='cus_A', provider_subscription_id='sub_1')
    if remote is not None:
        fake_stripe.subscriptions['sub_1'] = make_subscription('sub_1', 'cus_A', 2000000000, status=remote)

    result = orchestrator.start_checkout(user.id, 'monthly')

    assert result.kind == RedirectKind.CHECKOUT
    assert fake_stripe.checkout_sessions[0]['customer'] == 'cus_A'


def test_invalid_plan_touches_nothing(orchestrator, fake_stripe, db_session, user):
    with pytest.raises(InvalidPlan):
        orchestrator.start_checkout(user.id, 'lifetime')
    assert fake_stripe.customers_created == []
    assert SubscriptionStore(db_session).get(user.id) is None


def test_unknown_user_cannot_get_a_customer(orchestrator, fake_stripe):
    with pytest.raises(UserNotFound):
        orchestrator.start_checkout('ghost', 'monthly')
    assert fake_stripe.customers_created == []


def test_provider_failure_surfaces_without_retry(orchestrator, fake_stripe, user):
    fake_stripe.error = BillingProviderUnavailable()
    with pytest.raises(BillingProviderUnavailable):
        orchestrator.start_checkout(user.id, 'monthly')
    assert fake_stripe.customers_created == []


def test_concurrently_linked_customer_wins(orchestrator, fake_stripe, db_session, user, monkeypatch):
    store = SubscriptionStore(db_session)
    store.ensure(user.id)
    original_create = fake_stripe.create_customer

    def create_while_other_request_links(user_id, email, name=None):
        # Another request links its customer between our read and our write
        store.assign_customer_id(user_id, 'cus_winner')
        return original_create(user_id, email, name)

    monkeypatch.setattr(fake_stripe, 'create_customer', create_while_other_request_links)

    orchestrator.start_checkout(user.id, 'monthly')

    assert store.get(user.id).provider_customer_id == 'cus_winner'
    assert fake_stripe.checkout_sessions[0]['customer'] == 'cus_winner'


def test_billing_portal_requires_customer(orchestrator, db_session, user):
    with pytest.raises(NoBillingRelationship):
        orchestrator.open_billing_portal(user.id)
    SubscriptionStore(db_session).ensure(user.id)
    with pytest.raises(NoBillingRelationship):
        orchestrator.open_billing_portal(user.id)


def test_billing_portal_for_existing_customer(orchestrator, db_session, user):
    SubscriptionStore(db_session).upsert_by_user_id(user.id, provider_customer_id='cus_A')
    result = orchestrator.open_billing_portal(user.id)
    assert result.kind == RedirectKind.PORTAL
    assert result.redirect_url == 'https://billing.stripe.test/cus_A'


def test_stripe_price_rejection_maps_to_invalid_plan(db_session, user, monkeypatch):
    from billing_sync_svc.stripe_integration import StripeIntegration

    def reject_price(**kwargs):
        raise stripe.InvalidRequestError('No such price', 'line_items[0][price]')

    monkeypatch.setattr(stripe.checkout, 'Session', type('FakeSession', (), {'create': reject_price}))
    integration = StripeIntegration(api_key='sk_test_dummy')
    SubscriptionStore(db_session).upsert_by_user_id(user.id, provider_customer_id='cus_A')

    with pytest.raises(InvalidPlan):
        CheckoutOrchestrator(db_session, integration, plans={}).start_checkout(user.id, 'price_bogus')

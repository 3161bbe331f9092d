import hashlib
import hmac
import json
import os
import time

os.environ.setdefault('DATABASE_URL', 'sqlite://')

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from billing_sync_svc.app import app
from billing_sync_svc.dependencies import get_optional_stripe_integration, get_stripe_integration
from billing_sync_svc.models.base import get_db, init_db
from billing_sync_svc.models.user import User
from billing_sync_svc.stripe_integration import StripeIntegration

WEBHOOK_SECRET = 'whsec_test_secret'
PLANS = {'monthly': 'price_monthly', 'yearly': 'price_yearly'}


class FakeStripeIntegration(StripeIntegration):
    """
    Stands in for Stripe: records every call and serves subscriptions from
    ``self.subscriptions``. Webhook verification is inherited unchanged.
    """

    def __init__(self):
        super().__init__(api_key='sk_test_fake')
        self.customers_created = []
        self.checkout_sessions = []
        self.portal_sessions = []
        self.cancelled = []
        self.retrieved = []
        self.subscriptions = {}
        self.error = None

    def _maybe_fail(self):
        if self.error is not None:
            raise self.error

    def create_customer(self, user_id, email, name=None):
        self._maybe_fail()
        customer = {"id": f"cus_{len(self.customers_created) + 1}", "email": email, "name": name,
                    "metadata": {"user_id": user_id}}
        self.customers_created.append(customer)
        return customer

    def retrieve_subscription(self, subscription_id):
        self._maybe_fail()
        self.retrieved.append(subscription_id)
        return self.subscriptions.get(subscription_id)

    def cancel_subscription(self, subscription_id):
        self._maybe_fail()
        self.cancelled.append(subscription_id)
        return {"id": subscription_id, "status": "canceled"}

    def create_checkout_session(self, customer_id, price_id, user_id, success_url, cancel_url):
        self._maybe_fail()
        session_id = f"cs_{len(self.checkout_sessions) + 1}"
        session = {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}", "customer": customer_id,
                   "price": price_id, "metadata": {"user_id": user_id}}
        self.checkout_sessions.append(session)
        return session

    def create_portal_session(self, customer_id, return_url):
        self._maybe_fail()
        session = {"id": f"bps_{len(self.portal_sessions) + 1}", "url": f"https://billing.stripe.test/{customer_id}",
                   "customer": customer_id}
        self.portal_sessions.append(session)
        return session


def build_subscription(subscription_id, customer_id, period_end, status='active', price_id='price_monthly'):
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "items": {"object": "list", "data": [
            {"id": f"si_{subscription_id}", "price": {"id": price_id}, "current_period_end": period_end},
        ]},
    }


def build_event(event_type, data_object, event_id='evt_1'):
    return {"id": event_id, "object": "event", "type": event_type, "created": 1234567890,
            "data": {"object": data_object}}


def sign(payload, secret=WEBHOOK_SECRET, timestamp=None):
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode('utf-8'), f"{timestamp}.{payload}".encode('utf-8'), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def make_subscription():
    return build_subscription


@pytest.fixture
def make_event():
    return build_event


@pytest.fixture
def sign_payload():
    return sign


@pytest.fixture
def engine():
    engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def fake_stripe():
    return FakeStripeIntegration()


@pytest.fixture
def user(db_session):
    user = User(id='user_1', email='reader@example.com', name='Rae Reader')
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def client(db_session, fake_stripe, monkeypatch):
    monkeypatch.setenv('STRIPE_ENDPOINT_SECRET', WEBHOOK_SECRET)
    monkeypatch.setenv('STRIPE_PRICE_MONTHLY', PLANS['monthly'])
    monkeypatch.setenv('STRIPE_PRICE_YEARLY', PLANS['yearly'])

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_integration] = lambda: fake_stripe
    app.dependency_overrides[get_optional_stripe_integration] = lambda: fake_stripe
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def post_webhook(client, sign_payload):
    def _post(event, signature=None):
        payload = json.dumps(event)
        headers = {"Stripe-Signature": signature or sign_payload(payload)}
        return client.post("/api/subscriptions/webhook", content=payload, headers=headers)
    return _post

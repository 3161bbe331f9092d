import enum
import logging
from typing import Dict, NamedTuple, Optional

from sqlalchemy.orm import Session

from billing_sync_svc.config import absolute_url, get_plan_prices
from billing_sync_svc.exceptions import InvalidPlan, NoBillingRelationship, UserNotFound
from billing_sync_svc.models.user import User
from billing_sync_svc.stripe_integration import ACTIVE_SUBSCRIPTION_STATUSES, StripeIntegration
from billing_sync_svc.subscription_store import SubscriptionStore

SUCCESS_PATH = "/subscribe/success?session_id={CHECKOUT_SESSION_ID}"
CANCEL_PATH = "/subscribe"
PORTAL_RETURN_PATH = "/dashboard/settings"


class RedirectKind(str, enum.Enum):
    CHECKOUT = "checkout"
    PORTAL = "portal"


class CheckoutResult(NamedTuple):
    redirect_url: str
    kind: RedirectKind


def resolve_price_id(plan_id: str, plans: Dict[str, str]) -> str:
    """
    Map a plan name or configured price id to a Stripe price id.

    With no plans configured the id is handed to Stripe as-is, which rejects
    unknown prices itself.
    """
    plan_id = (plan_id or "").strip()
    if not plan_id:
        raise InvalidPlan("Plan ID is required")
    if not plans:
        return plan_id
    if plan_id in plans:
        return plans[plan_id]
    if plan_id in plans.values():
        return plan_id
    raise InvalidPlan(f"Unknown plan: {plan_id}")


class CheckoutOrchestrator:
    """
    Decides whether a user starting a payment goes to a new Checkout session
    or to the billing portal of the subscription they already have.

    Only ever sets the Stripe customer id on the local record; the tier is
    advanced exclusively by webhooks.
    """

    def __init__(self, db: Session, stripe_integration: StripeIntegration, plans: Optional[Dict[str, str]] = None) -> None:
        self.db = db
        self.store = SubscriptionStore(db)
        self.stripe_integration = stripe_integration
        self.plans = get_plan_prices() if plans is None else plans

    def start_checkout(self, user_id: str, plan_id: str) -> CheckoutResult:
        price_id = resolve_price_id(plan_id, self.plans)

        record = self.store.ensure(user_id)
        customer_id = record.provider_customer_id or self._create_customer(user_id)

        if record.provider_subscription_id:
            remote = self.stripe_integration.retrieve_subscription(record.provider_subscription_id)
            if remote is not None and remote.get("status") in ACTIVE_SUBSCRIPTION_STATUSES:
                logging.info(
                    f"User {user_id} already has subscription {record.provider_subscription_id} "
                    f"({remote.get('status')}); redirecting to billing portal"
                )
                portal = self.stripe_integration.create_portal_session(customer_id, absolute_url(PORTAL_RETURN_PATH))
                return CheckoutResult(portal["url"], RedirectKind.PORTAL)

        session = self.stripe_integration.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            user_id=user_id,
            success_url=absolute_url(SUCCESS_PATH),
            cancel_url=absolute_url(CANCEL_PATH),
        )
        logging.info(f"Created checkout session {session.get('id')} for user {user_id} on price {price_id}")
        return CheckoutResult(session["url"], RedirectKind.CHECKOUT)

    def open_billing_portal(self, user_id: str) -> CheckoutResult:
        record = self.store.get(user_id)
        if record is None or not record.provider_customer_id:
            raise NoBillingRelationship()
        portal = self.stripe_integration.create_portal_session(
            record.provider_customer_id, absolute_url(PORTAL_RETURN_PATH)
        )
        return CheckoutResult(portal["url"], RedirectKind.PORTAL)

    def _create_customer(self, user_id: str) -> str:
        user = self.db.query(User).filter(User.id == user_id).first()
        if user is None:
            raise UserNotFound()
        customer = self.stripe_integration.create_customer(user_id, user.email, user.name)
        stored_id = self.store.assign_customer_id(user_id, customer["id"])
        if stored_id != customer["id"]:
            # A concurrent request linked a customer first; keep that one
            logging.warning(
                f"User {user_id} already linked to customer {stored_id}; discarding customer {customer['id']}"
            )
        else:
            logging.info(f"Linked user {user_id} to Stripe customer {stored_id}")
        return stored_id

"""
Applies Stripe webhook events to the local subscription records.

Every handler writes the complete resulting state of the fields it owns,
resolved by a stable Stripe identifier, in a single statement. Applying an
event twice, or applying "subscription updated" and "payment succeeded" for
the same renewal in either order, converges to the same record.

Processed event ids are not stored, so any event kind added here must be
idempotent by construction (no counters, no increments).
"""
import datetime
import enum
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from billing_sync_svc.exceptions import RecordNotResolved
from billing_sync_svc.models.subscription import Tier
from billing_sync_svc.stripe_integration import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    TERMINAL_SUBSCRIPTION_STATUSES,
    StripeIntegration,
)
from billing_sync_svc.subscription_store import SubscriptionStore


class EventKind(str, enum.Enum):
    CHECKOUT_COMPLETED = 'checkout.session.completed'
    PAYMENT_SUCCEEDED = 'invoice.payment_succeeded'
    PAYMENT_FAILED = 'invoice.payment_failed'
    SUBSCRIPTION_UPDATED = 'customer.subscription.updated'
    SUBSCRIPTION_DELETED = 'customer.subscription.deleted'
    UNKNOWN = 'unknown'

    @classmethod
    def from_type(cls, event_type: str) -> 'EventKind':
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


def _object_id(value: Any) -> Optional[str]:
    """Stripe references are either an id or the expanded object."""
    if isinstance(value, dict):
        return value.get('id')
    return value or None


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get('items') or {}).get('data') or []
    return items[0] if items else {}


def _period_end(subscription: Dict[str, Any]) -> Optional[datetime.datetime]:
    # Newer API versions report the period on the subscription item
    timestamp = _first_item(subscription).get('current_period_end')
    if timestamp is None:
        timestamp = subscription.get('current_period_end')
    if timestamp is None:
        return None
    return datetime.datetime.fromtimestamp(timestamp, tz=datetime.timezone.utc)


def _price_id(subscription: Dict[str, Any]) -> Optional[str]:
    return _object_id(_first_item(subscription).get('price'))


def _tier_for_status(status: Optional[str]) -> Tier:
    return Tier.PAID if status in ACTIVE_SUBSCRIPTION_STATUSES else Tier.FREE


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    details = (invoice.get('parent') or {}).get('subscription_details') or {}
    return _object_id(details.get('subscription')) or _object_id(invoice.get('subscription'))


def _raise_unless_stale(
    store: SubscriptionStore,
    event_id: str,
    subscription_id: str,
    customer_id: Optional[str],
    terminal: bool = False,
) -> None:
    """
    Decide what a subscription id that matches no record means.

    The event is acknowledged without a write when the customer's record
    already points at a newer subscription. A terminal event is also
    acknowledged when the record no longer holds any subscription (the
    deletion was applied before) or when no record holds the customer at all
    (the account was deleted). Anything else has not been linked locally yet
    and is raised so Stripe redelivers it.
    """
    record = store.find_by_provider_customer_id(customer_id) if customer_id else None
    if record is None and terminal:
        logging.info(f"Event {event_id}: no record left for subscription {subscription_id}. No action taken.")
        return
    if record is not None:
        if record.provider_subscription_id and record.provider_subscription_id != subscription_id:
            logging.info(
                f"Event {event_id}: subscription {subscription_id} superseded by "
                f"{record.provider_subscription_id} for user {record.user_id}. No action taken."
            )
            return
        if terminal and record.provider_subscription_id is None:
            logging.info(f"Event {event_id}: subscription {subscription_id} already cleared. No action taken.")
            return
    raise RecordNotResolved(f"No subscription record for subscription {subscription_id}")


def _handle_checkout_completed(event_id: str, session: Dict[str, Any], db: Session, stripe_integration: StripeIntegration) -> None:
    subscription_id = _object_id(session.get('subscription'))
    if session.get('mode') != 'subscription' or not subscription_id:
        logging.info(f"Event {event_id}: checkout session {session.get('id')} is not a subscription checkout. No action taken.")
        return

    subscription = stripe_integration.retrieve_subscription(subscription_id)
    if subscription is None:
        logging.warning(f"Event {event_id}: subscription {subscription_id} no longer exists at Stripe. No action taken.")
        return
    status = subscription.get('status')
    if status in TERMINAL_SUBSCRIPTION_STATUSES:
        # A late or replayed checkout must not undo the cancellation
        logging.info(f"Event {event_id}: subscription {subscription_id} is already {status}. No action taken.")
        return

    fields = {
        'tier': _tier_for_status(status),
        'provider_subscription_id': subscription_id,
        'provider_price_id': _price_id(subscription),
        'current_period_end': _period_end(subscription),
    }
    store = SubscriptionStore(db)
    customer_id = _object_id(session.get('customer'))
    if customer_id and store.update_by_customer_id(customer_id, **fields):
        logging.info(f"Event {event_id}: customer {customer_id} linked subscription {subscription_id} ({status}).")
        return

    user_id = (session.get('metadata') or {}).get('user_id') or session.get('client_reference_id')
    if not user_id:
        raise RecordNotResolved(
            f"Checkout session {session.get('id')} has no known customer and no user_id metadata"
        )
    store.upsert_by_user_id(user_id, provider_customer_id=customer_id, **fields)
    logging.info(f"Event {event_id}: user {user_id} linked subscription {subscription_id} ({status}).")


def _handle_payment_succeeded(event_id: str, invoice: Dict[str, Any], db: Session, stripe_integration: StripeIntegration) -> None:
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        logging.info(f"Event {event_id}: invoice {invoice.get('id')} is not tied to a subscription. No action taken.")
        return

    subscription = stripe_integration.retrieve_subscription(subscription_id)
    if subscription is None:
        logging.warning(f"Event {event_id}: subscription {subscription_id} no longer exists at Stripe. No action taken.")
        return

    store = SubscriptionStore(db)
    updated = store.update_by_subscription_id(
        subscription_id,
        provider_price_id=_price_id(subscription),
        current_period_end=_period_end(subscription),
    )
    if not updated:
        _raise_unless_stale(store, event_id, subscription_id, _object_id(invoice.get('customer')))
        return
    logging.info(f"Event {event_id}: renewal of subscription {subscription_id} recorded.")


def _handle_payment_failed(event_id: str, invoice: Dict[str, Any]) -> None:
    # Stripe owns dunning; access continues until the paid period ends
    logging.warning(
        f"Event {event_id}: payment failed for customer {_object_id(invoice.get('customer'))}, "
        f"invoice {invoice.get('id')}."
    )


def _handle_subscription_updated(event_id: str, subscription: Dict[str, Any], db: Session) -> None:
    subscription_id = subscription.get('id')
    if not subscription_id:
        raise ValueError("Missing subscription id in customer.subscription.updated event")

    store = SubscriptionStore(db)
    status = subscription.get('status')
    tier = _tier_for_status(status)
    updated = store.update_by_subscription_id(
        subscription_id,
        tier=tier,
        provider_price_id=_price_id(subscription),
        current_period_end=_period_end(subscription),
    )
    if not updated:
        _raise_unless_stale(
            store, event_id, subscription_id, _object_id(subscription.get('customer')),
            terminal=status in TERMINAL_SUBSCRIPTION_STATUSES,
        )
        return
    logging.info(f"Event {event_id}: subscription {subscription_id} is {status}, tier {tier.value}.")


def _handle_subscription_deleted(event_id: str, subscription: Dict[str, Any], db: Session) -> None:
    subscription_id = subscription.get('id')
    if not subscription_id:
        raise ValueError("Missing subscription id in customer.subscription.deleted event")

    store = SubscriptionStore(db)
    # The customer id is kept so a later checkout reuses the same Stripe customer
    updated = store.update_by_subscription_id(
        subscription_id,
        tier=Tier.FREE,
        provider_subscription_id=None,
        provider_price_id=None,
        current_period_end=None,
    )
    if not updated:
        _raise_unless_stale(
            store, event_id, subscription_id, _object_id(subscription.get('customer')), terminal=True
        )
        return
    logging.info(f"Event {event_id}: subscription {subscription_id} deleted, user downgraded to FREE.")


def process_event(event: Dict[str, Any], db: Session, stripe_integration: StripeIntegration) -> EventKind:
    """
    Process a verified Stripe event and update subscription records accordingly.

    :param event: Dictionary representing the Stripe event payload.
    :param db: SQLAlchemy Session instance.
    :param stripe_integration: Client used to read the current subscription from Stripe.
    :return: The kind the event was dispatched as; unknown kinds are acknowledged and ignored.
    :raises ValueError: if the event is malformed.
    :raises RecordNotResolved: if the event references a subscription not linked locally yet.
    :raises PersistenceFailure: if the database write fails.
    :raises BillingProviderUnavailable: if Stripe cannot be read.
    """
    event_type = event.get('type')
    if not event_type:
        error_msg = "Missing 'type' in event payload"
        logging.error(error_msg)
        raise ValueError(error_msg)

    event_id = event.get('id', 'N/A')
    payload = (event.get('data') or {}).get('object') or {}
    kind = EventKind.from_type(event_type)

    try:
        if kind is EventKind.CHECKOUT_COMPLETED:
            _handle_checkout_completed(event_id, payload, db, stripe_integration)
        elif kind is EventKind.PAYMENT_SUCCEEDED:
            _handle_payment_succeeded(event_id, payload, db, stripe_integration)
        elif kind is EventKind.PAYMENT_FAILED:
            _handle_payment_failed(event_id, payload)
        elif kind is EventKind.SUBSCRIPTION_UPDATED:
            _handle_subscription_updated(event_id, payload, db)
        elif kind is EventKind.SUBSCRIPTION_DELETED:
            _handle_subscription_deleted(event_id, payload, db)
        else:
            logging.info(f"Unhandled event type: {event_type} for event {event_id}. No action taken.")
    except Exception as e:
        logging.error(f"Event {event_id} ({event_type}) failed: {e}", exc_info=True)
        raise

    return kind

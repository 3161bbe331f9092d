import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_sync_svc.exceptions import BillingError, PersistenceFailure, UserNotFound
from billing_sync_svc.models.user import User
from billing_sync_svc.stripe_integration import StripeIntegration
from billing_sync_svc.subscription_store import SubscriptionStore


def delete_account(db: Session, user_id: str, stripe_integration: Optional[StripeIntegration]) -> bool:
    """
    Delete a user together with their subscription record.

    Cancelling the Stripe subscription first is best-effort: a failure, or
    Stripe not being configured at all, is logged and the deletion goes ahead.

    :return: True if a Stripe subscription was cancelled.
    :raises UserNotFound: if the user does not exist.
    :raises PersistenceFailure: if the database deletion fails.
    """
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise UserNotFound()

    store = SubscriptionStore(db)
    record = store.get(user_id)
    subscription_id = record.provider_subscription_id if record is not None else None
    cancelled = False
    if subscription_id and stripe_integration is None:
        logging.error(f"Stripe is not configured; subscription {subscription_id} of user {user_id} left active")
    elif subscription_id:
        try:
            stripe_integration.cancel_subscription(subscription_id)
            cancelled = True
        except BillingError as e:
            logging.error(
                f"Could not cancel subscription {subscription_id} of user {user_id}: {e}",
                exc_info=True,
            )

    # Record and user go in one transaction
    store.delete(user_id, commit=False)
    try:
        db.delete(user)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logging.error(f"Failed to delete user {user_id}: {e}", exc_info=True)
        raise PersistenceFailure(f"Failed to delete user {user_id}") from e

    logging.info(f"Deleted account {user_id}")
    return cancelled

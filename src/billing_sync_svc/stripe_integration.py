import json
import logging
from typing import Any, Dict, Optional

import stripe

from billing_sync_svc.exceptions import BillingProviderUnavailable, InvalidPlan, InvalidSignature

# Statuses under which Stripe still bills the customer for the subscription
ACTIVE_SUBSCRIPTION_STATUSES = ('active', 'trialing')
# Statuses a subscription never leaves
TERMINAL_SUBSCRIPTION_STATUSES = ('canceled', 'incomplete_expired')


def _as_dict(stripe_object: Any) -> Dict[str, Any]:
    """Convert a StripeObject (or an already plain mapping) into a plain dict."""
    to_dict = getattr(stripe_object, 'to_dict', None)
    if callable(to_dict):
        return to_dict()
    return dict(stripe_object)


class StripeIntegration:
    """
    This class encapsulates the calls made to the Stripe API: customers,
    subscriptions, checkout and billing portal sessions, and webhook
    verification.

    The API key is passed on every request instead of being set on the
    ``stripe`` module, so several clients (or a fake in tests) can coexist.
    Failures are surfaced as ``BillingProviderUnavailable`` and never retried
    here; callers decide whether to retry.
    """

    def __init__(self, api_key: str, webhook_tolerance: int = 300) -> None:
        if not api_key:
            raise ValueError('A Stripe API key is required.')
        self.api_key = api_key
        self.webhook_tolerance = webhook_tolerance

    def create_customer(self, user_id: str, email: str, name: Optional[str] = None) -> Dict[str, Any]:
        """
        Create a Stripe customer for a local user.

        The idempotency key is derived from the user id, so a retried request
        returns the customer created by the first attempt instead of a new one.

        :param user_id: Local user id, stored in the customer metadata.
        :param email: Customer email.
        :param name: Customer display name.
        :return: The created customer as a dictionary.
        :raises BillingProviderUnavailable: if Stripe cannot be reached or rejects the call.
        """
        try:
            customer = stripe.Customer.create(
                email=email,
                name=name,
                metadata={'user_id': user_id},
                idempotency_key=f'customer-create-{user_id}',
                api_key=self.api_key,
            )
            return _as_dict(customer)
        except stripe.StripeError as e:
            logging.error(f"Error creating Stripe customer for user {user_id}: {e}", exc_info=True)
            raise BillingProviderUnavailable('Failed to create billing customer') from e

    def retrieve_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a subscription from Stripe.

        :param subscription_id: The ID of the subscription.
        :return: The subscription as a dictionary, or None if Stripe no longer knows it.
        :raises ValueError: if subscription_id is empty.
        :raises BillingProviderUnavailable: on any other Stripe failure.
        """
        if not subscription_id or not subscription_id.strip():
            raise ValueError('subscription_id cannot be empty')
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
            return _as_dict(subscription)
        except stripe.InvalidRequestError as e:
            if getattr(e, 'code', None) == 'resource_missing':
                logging.info(f"Subscription {subscription_id} does not exist at Stripe")
                return None
            logging.error(f"Error retrieving subscription {subscription_id}: {e}", exc_info=True)
            raise BillingProviderUnavailable('Failed to retrieve subscription') from e
        except stripe.StripeError as e:
            logging.error(f"Error retrieving subscription {subscription_id}: {e}", exc_info=True)
            raise BillingProviderUnavailable('Failed to retrieve subscription') from e

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """
        Cancel an existing subscription immediately.

        :param subscription_id: The ID of the subscription to cancel.
        :return: The canceled subscription details as a dictionary.
        :raises BillingProviderUnavailable: if cancellation fails.
        """
        try:
            canceled_subscription = stripe.Subscription.cancel(subscription_id, api_key=self.api_key)
            return _as_dict(canceled_subscription)
        except stripe.StripeError as e:
            logging.error(f"Error canceling subscription {subscription_id}: {e}", exc_info=True)
            raise BillingProviderUnavailable('Failed to cancel subscription') from e

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        user_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, Any]:
        """
        Create a subscription-mode Checkout session.

        The local user id travels as metadata on both the session and the
        subscription it creates, so webhooks can find the user even before the
        customer is linked locally.

        :raises InvalidPlan: if Stripe rejects the price.
        :raises BillingProviderUnavailable: on any other Stripe failure.
        """
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                mode='subscription',
                payment_method_types=['card'],
                line_items=[{'price': price_id, 'quantity': 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={'user_id': user_id},
                subscription_data={'metadata': {'user_id': user_id}},
                allow_promotion_codes=True,
                api_key=self.api_key,
            )
            return _as_dict(session)
        except stripe.InvalidRequestError as e:
            param = getattr(e, 'param', None) or ''
            if param.startswith('line_items'):
                logging.warning(f"Stripe rejected price {price_id}: {e}")
                raise InvalidPlan(f"Unknown plan: {price_id}") from e
            logging.error(f"Error creating checkout session for user {user_id}: {e}", exc_info=True)
            raise BillingProviderUnavailable('Failed to create checkout session') from e
        except stripe.StripeError as e:
            logging.error(f"Error creating checkout session for user {user_id}: {e}", exc_info=True)
            raise BillingProviderUnavailable('Failed to create checkout session') from e

    def create_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        """
        Create a billing portal session for an existing customer.

        :raises BillingProviderUnavailable: if Stripe cannot create the session.
        """
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
                api_key=self.api_key,
            )
            return _as_dict(session)
        except stripe.StripeError as e:
            logging.error(f"Error creating portal session for customer {customer_id}: {e}", exc_info=True)
            raise BillingProviderUnavailable('Failed to create billing portal session') from e

    def process_webhook_event(self, payload: str, sig_header: str, endpoint_secret: str) -> Dict[str, Any]:
        """
        Verify a webhook delivery and decode its event.

        :param payload: The raw payload from the webhook.
        :param sig_header: The Stripe-Signature header from the webhook.
        :param endpoint_secret: The webhook endpoint secret used for signature verification.
        :return: The event as a plain dictionary.
        :raises InvalidSignature: if the signature does not match or is too old.
        :raises ValueError: if the payload is not a JSON object.
        """
        try:
            stripe.WebhookSignature.verify_header(payload, sig_header, endpoint_secret, self.webhook_tolerance)
        except stripe.SignatureVerificationError as e:
            logging.error(f'Webhook signature verification failed: {e}')
            raise InvalidSignature() from e

        try:
            event = json.loads(payload)
        except ValueError as e:
            logging.error(f'Webhook payload is not valid JSON: {e}')
            raise ValueError('Invalid payload') from e
        if not isinstance(event, dict):
            raise ValueError('Invalid payload')
        return event

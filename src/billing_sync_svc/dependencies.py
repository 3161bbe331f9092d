from typing import Optional

from fastapi import Header

from billing_sync_svc.config import get_stripe_api_key, get_webhook_tolerance
from billing_sync_svc.exceptions import BillingNotConfigured, NotAuthenticated
from billing_sync_svc.stripe_integration import StripeIntegration


def get_stripe_integration() -> StripeIntegration:
    api_key = get_stripe_api_key()
    if not api_key:
        raise BillingNotConfigured()
    return StripeIntegration(api_key=api_key, webhook_tolerance=get_webhook_tolerance())


def get_optional_stripe_integration() -> Optional[StripeIntegration]:
    """Like get_stripe_integration, but None when Stripe is not configured."""
    api_key = get_stripe_api_key()
    if not api_key:
        return None
    return StripeIntegration(api_key=api_key, webhook_tolerance=get_webhook_tolerance())


def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """
    Id of the authenticated caller.

    Sessions are issued and checked upstream; the session layer forwards the
    authenticated user's id in the X-User-Id header.
    """
    if not x_user_id or not x_user_id.strip():
        raise NotAuthenticated()
    return x_user_id.strip()

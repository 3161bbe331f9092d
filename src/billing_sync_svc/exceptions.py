"""
Errors raised by the billing synchronization core.

Each error carries the HTTP status the API layer answers with; the message is
what ends up in the ``{"error": ...}`` response body.
"""
from typing import Optional


class BillingError(Exception):
    status_code = 500
    default_message = "Billing error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidSignature(BillingError):
    """Webhook payload could not be authenticated against the endpoint secret."""
    status_code = 400
    default_message = "Webhook signature verification failed"


class InvalidPlan(BillingError):
    status_code = 400
    default_message = "Invalid plan"


class NoBillingRelationship(BillingError):
    status_code = 400
    default_message = "No billing account found. Please subscribe first."


class NotAuthenticated(BillingError):
    status_code = 401
    default_message = "Unauthorized"


class UserNotFound(BillingError):
    status_code = 404
    default_message = "User not found"


class BillingProviderUnavailable(BillingError):
    """Transient upstream failure. Callers decide whether to retry."""
    status_code = 503
    default_message = "Billing provider unavailable"


class BillingNotConfigured(BillingError):
    status_code = 503
    default_message = "Stripe is not configured"


class RecordNotResolved(BillingError):
    """A webhook references an identifier that matches no local record yet."""
    status_code = 500
    default_message = "Subscription record could not be resolved"


class PersistenceFailure(BillingError):
    status_code = 500
    default_message = "Failed to persist subscription state"

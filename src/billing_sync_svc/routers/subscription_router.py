import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from billing_sync_svc.access_policy import evaluate
from billing_sync_svc.checkout import CheckoutOrchestrator
from billing_sync_svc.config import get_endpoint_secret
from billing_sync_svc.dependencies import get_current_user_id, get_stripe_integration
from billing_sync_svc.models.base import get_db
from billing_sync_svc.models.subscription import Tier
from billing_sync_svc.stripe_event_processor import process_event
from billing_sync_svc.stripe_integration import StripeIntegration
from billing_sync_svc.subscription_store import SubscriptionStore

router = APIRouter()


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(..., alias="planId", min_length=1)


@router.post("/checkout", status_code=200)
def create_checkout(
    checkout_request: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    stripe_integration: StripeIntegration = Depends(get_stripe_integration),
):
    orchestrator = CheckoutOrchestrator(db, stripe_integration)
    result = orchestrator.start_checkout(user_id, checkout_request.plan_id)
    return {"redirectUrl": result.redirect_url, "kind": result.kind.value}


@router.post("/portal", status_code=200)
def open_billing_portal(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    stripe_integration: StripeIntegration = Depends(get_stripe_integration),
):
    result = CheckoutOrchestrator(db, stripe_integration).open_billing_portal(user_id)
    return {"redirectUrl": result.redirect_url}


@router.get("/status", status_code=200)
def get_subscription_status(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    record = SubscriptionStore(db).find_or_default(user_id)
    effective = evaluate(record)
    return {
        "tier": effective.tier.value,
        "isActive": effective.is_active,
        "isPaid": effective.tier == Tier.PAID,
        "expiresAt": effective.expires_at.isoformat() if effective.expires_at else None,
        "hasBillingAccount": bool(record.provider_customer_id),
    }


@router.post("/webhook", status_code=200)
async def process_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_integration: StripeIntegration = Depends(get_stripe_integration),
):
    payload_bytes = await request.body()
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe-Signature header")
    endpoint_secret = get_endpoint_secret()
    if not endpoint_secret:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Stripe endpoint secret not configured")

    try:
        payload = payload_bytes.decode('utf-8')
        event = stripe_integration.process_webhook_event(payload, sig_header, endpoint_secret)
    except UnicodeDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        kind = await run_in_threadpool(process_event, event, db, stripe_integration)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        # Any non-2xx answer makes Stripe redeliver the event later
        logging.error(f"Webhook event {event.get('id')} not applied: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook handler failed"},
        )

    return {"received": True, "type": event.get("type"), "kind": kind.value}

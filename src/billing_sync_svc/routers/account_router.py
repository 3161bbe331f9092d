from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from billing_sync_svc.account import delete_account
from billing_sync_svc.dependencies import get_current_user_id, get_optional_stripe_integration
from billing_sync_svc.models.base import get_db
from billing_sync_svc.stripe_integration import StripeIntegration

router = APIRouter()


class DeleteAccountRequest(BaseModel):
    confirmation: Literal["DELETE MY ACCOUNT"]


@router.post("/delete", status_code=200)
def delete_my_account(
    delete_request: DeleteAccountRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    stripe_integration: Optional[StripeIntegration] = Depends(get_optional_stripe_integration),
):
    subscription_cancelled = delete_account(db, user_id, stripe_integration)
    return {"message": "Account deleted successfully", "subscriptionCancelled": subscription_cancelled}

import datetime
from typing import NamedTuple, Optional

from sqlalchemy.orm import Session

from billing_sync_svc.models.subscription import SubscriptionRecord, Tier, utcnow
from billing_sync_svc.subscription_store import SubscriptionStore


class EffectiveTier(NamedTuple):
    tier: Tier
    is_active: bool
    expires_at: Optional[datetime.datetime]


def evaluate(record: SubscriptionRecord, now: Optional[datetime.datetime] = None) -> EffectiveTier:
    """
    Compute the access a record grants at ``now``.

    Expiry is evaluated here on every read; nothing flips ``tier`` back to
    FREE when a period lapses, so ``tier`` must never be checked on its own.
    """
    now = now or utcnow()
    tier = record.tier or Tier.FREE
    expires_at = record.current_period_end
    is_active = tier == Tier.PAID and expires_at is not None and expires_at > now
    return EffectiveTier(tier=tier, is_active=is_active, expires_at=expires_at)


def get_effective_tier(db: Session, user_id: str, now: Optional[datetime.datetime] = None) -> EffectiveTier:
    return evaluate(SubscriptionStore(db).find_or_default(user_id), now)


def has_paid_access(db: Session, user_id: Optional[str], now: Optional[datetime.datetime] = None) -> bool:
    """Gate for premium content; anonymous readers never have paid access."""
    if not user_id:
        return False
    return get_effective_tier(db, user_id, now).is_active

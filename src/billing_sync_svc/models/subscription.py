import datetime
import enum

from sqlalchemy import Column, DateTime, Enum, ForeignKey, String
from sqlalchemy.types import TypeDecorator

from billing_sync_svc.models.base import Base


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    DateTime that always hands back timezone-aware UTC values.

    SQLite drops tzinfo on the way in, so naive values read back are treated as UTC.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        return value.astimezone(datetime.timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=datetime.timezone.utc)
        return value.astimezone(datetime.timezone.utc)


class Tier(str, enum.Enum):
    FREE = 'FREE'
    PAID = 'PAID'


class SubscriptionRecord(Base):
    """
    Local mirror of a user's Stripe billing state.

    ``tier`` alone never grants access: PAID only counts while
    ``current_period_end`` is in the future (see ``access_policy``).
    """
    __tablename__ = 'subscriptions'

    user_id = Column(String, ForeignKey('users.id'), primary_key=True)
    tier = Column(Enum(Tier, name='subscription_tier'), nullable=False, default=Tier.FREE)
    provider_customer_id = Column(String, unique=True, nullable=True)
    provider_subscription_id = Column(String, unique=True, nullable=True)
    provider_price_id = Column(String, nullable=True)
    current_period_end = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(user_id={self.user_id}, tier={self.tier}, "
            f"subscription={self.provider_subscription_id}, period_end={self.current_period_end})>"
        )

import logging
from typing import Any, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_sync_svc.exceptions import PersistenceFailure
from billing_sync_svc.models.subscription import SubscriptionRecord, Tier, utcnow

_UPSERT_DIALECTS = {
    'postgresql': postgresql.insert,
    'sqlite': sqlite.insert,
}


class SubscriptionStore:
    """
    Persistence boundary for subscription records.

    Every write is a single statement committed on its own, so concurrent
    requests for the same user never interleave into a torn record. Only
    ``delete`` can join a wider transaction instead.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, user_id: str) -> Optional[SubscriptionRecord]:
        return self.db.query(SubscriptionRecord).filter(SubscriptionRecord.user_id == user_id).first()

    def find_or_default(self, user_id: str) -> SubscriptionRecord:
        """
        Return the stored record, or a transient FREE record that is not persisted.
        """
        record = self.get(user_id)
        if record is None:
            return SubscriptionRecord(user_id=user_id, tier=Tier.FREE)
        return record

    def find_by_provider_customer_id(self, customer_id: str) -> Optional[SubscriptionRecord]:
        return (
            self.db.query(SubscriptionRecord)
            .filter(SubscriptionRecord.provider_customer_id == customer_id)
            .first()
        )

    def find_by_provider_subscription_id(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        return (
            self.db.query(SubscriptionRecord)
            .filter(SubscriptionRecord.provider_subscription_id == subscription_id)
            .first()
        )

    def ensure(self, user_id: str) -> SubscriptionRecord:
        """
        Load the user's record, inserting a FREE one first if none exists.
        """
        insert = self._insert_construct()
        now = utcnow()
        statement = (
            insert(SubscriptionRecord)
            .values(user_id=user_id, tier=Tier.FREE, created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=['user_id'])
        )
        self._execute(statement, f"create subscription record for user {user_id}")
        return self.get(user_id)

    def assign_customer_id(self, user_id: str, customer_id: str) -> str:
        """
        Set the Stripe customer id unless one is already stored.

        Returns the customer id that is stored after the call, which is the
        previously stored one when another request got there first.
        """
        statement = (
            update(SubscriptionRecord)
            .where(
                SubscriptionRecord.user_id == user_id,
                SubscriptionRecord.provider_customer_id.is_(None),
            )
            .values(provider_customer_id=customer_id)
            .execution_options(synchronize_session=False)
        )
        result = self._execute(statement, f"assign customer {customer_id} to user {user_id}")
        if result.rowcount:
            return customer_id
        record = self.get(user_id)
        if record is None or record.provider_customer_id is None:
            raise PersistenceFailure(f"No subscription record to attach customer {customer_id} to")
        return record.provider_customer_id

    def upsert_by_user_id(self, user_id: str, provider_customer_id: Optional[str] = None, **fields: Any) -> None:
        """
        Insert or overwrite the billing fields of a user's record in one statement.

        A customer id that is already stored is kept; ``provider_customer_id``
        only fills an empty slot.
        """
        insert = self._insert_construct()
        now = utcnow()
        values = dict(fields, updated_at=now)
        statement = insert(SubscriptionRecord).values(
            user_id=user_id,
            provider_customer_id=provider_customer_id,
            created_at=now,
            **values,
        )
        update_set = dict(values)
        if provider_customer_id is not None:
            update_set['provider_customer_id'] = func.coalesce(
                SubscriptionRecord.provider_customer_id,
                statement.excluded.provider_customer_id,
            )
        statement = statement.on_conflict_do_update(index_elements=['user_id'], set_=update_set)
        self._execute(statement, f"upsert subscription record for user {user_id}")

    def update_by_customer_id(self, customer_id: str, **fields: Any) -> int:
        statement = (
            update(SubscriptionRecord)
            .where(SubscriptionRecord.provider_customer_id == customer_id)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        result = self._execute(statement, f"update subscription record of customer {customer_id}")
        return result.rowcount

    def update_by_subscription_id(self, subscription_id: str, **fields: Any) -> int:
        statement = (
            update(SubscriptionRecord)
            .where(SubscriptionRecord.provider_subscription_id == subscription_id)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        result = self._execute(statement, f"update subscription record of subscription {subscription_id}")
        return result.rowcount

    def delete(self, user_id: str, commit: bool = True) -> int:
        """
        Delete the user's record. With ``commit=False`` the deletion joins the
        caller's transaction and the caller commits or rolls back.
        """
        statement = (
            delete(SubscriptionRecord)
            .where(SubscriptionRecord.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        result = self._execute(statement, f"delete subscription record of user {user_id}", commit=commit)
        return result.rowcount

    def _insert_construct(self):
        dialect = self.db.get_bind().dialect.name
        try:
            return _UPSERT_DIALECTS[dialect]
        except KeyError:
            raise PersistenceFailure(f"Upserts are not supported on the {dialect} dialect")

    def _execute(self, statement, action: str, commit: bool = True):
        try:
            result = self.db.execute(statement)
            if commit:
                self.db.commit()
            return result
        except SQLAlchemyError as e:
            self.db.rollback()
            logging.error(f"Failed to {action}: {e}", exc_info=True)
            raise PersistenceFailure(f"Failed to {action}") from e

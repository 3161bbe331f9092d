from sqlalchemy import Column, String

from billing_sync_svc.models.base import Base


class User(Base):
    """
    Minimal view of the account owned by the authentication service.

    Only the fields billing needs are mapped: the id subscriptions hang off and
    the email/display name used to create the Stripe customer.
    """
    __tablename__ = 'users'

    id = Column(String, primary_key=True)
    email = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"

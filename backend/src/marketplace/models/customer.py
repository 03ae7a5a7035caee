"""Processor customer mapping kept by the backend."""
from sqlalchemy import Column, String

from marketplace.models.base import Base


class StripeCustomer(Base):
    """Links an authenticated user to their Stripe customer."""

    __tablename__ = "stripe_customers"

    user_id = Column(String, nullable=False, unique=True, index=True)
    customer_id = Column(String, nullable=False, unique=True)
    email = Column(String, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<StripeCustomer(user_id={self.user_id}, customer_id={self.customer_id})>"

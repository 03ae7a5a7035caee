"""Merchant plan and subscription models."""
from datetime import datetime
import enum

from sqlalchemy import Column, Boolean, DateTime, Integer, String, Text, Enum as SQLEnum

from marketplace.models.base import Base


class BillingInterval(enum.Enum):
    """How often a plan is charged."""

    ONE_TIME = "one_time"
    MONTH = "month"
    YEAR = "year"


class SubscriptionStatus(enum.Enum):
    """Subscription lifecycle status."""

    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"
    PAST_DUE = "past_due"
    PENDING = "pending"


class SubscriptionType(enum.Enum):
    """One-time passes expire; recurring plans renew until canceled."""

    ONE_TIME = "one_time"
    RECURRING = "recurring"


class MerchantPlan(Base):
    """Plan a merchant buys to sell on the marketplace."""

    __tablename__ = "merchant_plans"

    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    price_amount = Column(Integer, nullable=False)  # Amount in cents
    price_currency = Column(String(3), nullable=False, default="usd")
    billing_interval = Column(SQLEnum(BillingInterval), nullable=False, default=BillingInterval.MONTH)
    processor_price_id = Column(String, nullable=True)  # Stripe price_...
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<MerchantPlan(id={self.id}, name={self.name}, amount={self.price_amount})>"


class Subscription(Base):
    """
    A user's purchase of a merchant plan.

    Expiry is not pushed: it is recomputed from ``expires_at`` /
    ``current_period_end`` whenever the record is read.
    """

    __tablename__ = "subscriptions"

    user_id = Column(String, nullable=False, index=True)
    plan_id = Column(String, nullable=False, index=True)
    status = Column(SQLEnum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.PENDING, index=True)
    type = Column(SQLEnum(SubscriptionType), nullable=False, default=SubscriptionType.RECURRING)
    current_period_start = Column(DateTime, nullable=False, default=datetime.utcnow)
    current_period_end = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    processor_subscription_id = Column(String, nullable=True)  # Stripe sub_...
    payment_intent_id = Column(String, nullable=True, index=True)  # One-time passes
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Subscription(id={self.id}, user_id={self.user_id}, status={self.status.value}, type={self.type.value})>"

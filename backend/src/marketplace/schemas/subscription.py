"""Pydantic schemas for merchant plan purchases."""
from datetime import datetime
from uuid import UUID
import enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from marketplace.models.subscription import BillingInterval, SubscriptionStatus, SubscriptionType


class PaymentOption(str, enum.Enum):
    """Explicit routing for a plan purchase. The option always wins over method presence."""

    EXPRESS = "express"
    SAVED = "saved"
    ONE_TIME = "one_time"


class SubscriptionPurchaseRequest(BaseModel):
    """Body of the create_subscription action."""

    plan_id: str
    payment_method_id: str | None = Field(default=None, description="Processor token of the method to charge")
    payment_option: PaymentOption


class SubscriptionPurchaseResponse(BaseModel):
    """Backend answer to create_subscription."""

    success: bool
    requires_action: bool = False
    client_secret: SecretStr | None = None
    payment_intent_id: str | None = None
    subscription_id: str | None = None
    status: str | None = None
    error: str | None = None


class PlanRead(BaseModel):
    """Merchant plan as shown in the plan picker."""

    id: UUID
    name: str
    description: str | None
    price_amount: int
    price_currency: str
    billing_interval: BillingInterval
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class SubscriptionRead(BaseModel):
    """A user's subscription record."""

    id: UUID
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    type: SubscriptionType
    current_period_start: datetime
    current_period_end: datetime | None
    expires_at: datetime | None
    processor_subscription_id: str | None
    payment_intent_id: str | None
    cancel_at_period_end: bool

    model_config = ConfigDict(from_attributes=True)

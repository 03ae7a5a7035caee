"""Wire bodies of the backend functions under /functions/v1."""
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from marketplace.schemas.payment_method import ProcessorPaymentMethod


class _WireModel(BaseModel):
    """Accept both camelCase aliases and field names."""

    model_config = ConfigDict(populate_by_name=True)


class CreatePaymentIntentRequest(_WireModel):
    amount: int = Field(..., description="Amount in cents")
    description: str | None = None
    payment_method_id: str | None = Field(default=None, alias="paymentMethodId")
    currency: str | None = None
    seller_id: str | None = Field(default=None, alias="sellerId")
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey")
    metadata: dict[str, str] = Field(default_factory=dict)


class PaymentIntentResponse(_WireModel):
    payment_intent_id: str = Field(..., alias="paymentIntentId")
    client_secret: str | None = Field(default=None, alias="clientSecret")
    status: str | None = None
    amount: int | None = None
    currency: str | None = None


class RetrievePaymentIntentRequest(_WireModel):
    payment_intent_id: str = Field(..., alias="paymentIntentId")


class SetupIntentResponse(_WireModel):
    setup_intent_id: str = Field(..., alias="setupIntentId")
    client_secret: str = Field(..., alias="clientSecret")


class RetrieveSetupIntentRequest(_WireModel):
    setup_intent_id: str = Field(..., alias="setupIntentId")


class RetrieveSetupIntentResponse(_WireModel):
    status: str
    payment_method: ProcessorPaymentMethod | None = Field(default=None, alias="paymentMethod")


class PaymentMethodTokenRequest(_WireModel):
    payment_method_id: str = Field(..., alias="paymentMethodId")


class PaymentMethodResponse(_WireModel):
    payment_method: ProcessorPaymentMethod = Field(..., alias="paymentMethod")


class SubscriptionCheckoutRequest(_WireModel):
    """Envelope for the subscription-checkout function."""

    action: str
    subscription_data: dict[str, Any] | None = Field(default=None, alias="subscriptionData")
    subscription_id: str | None = Field(default=None, alias="subscriptionId")


class OkResponse(_WireModel):
    ok: bool = True


class SubscriptionCheckoutResponse(_WireModel):
    """Answer to create_subscription. The client secret travels in clear only on this hop."""

    success: bool
    requires_action: bool = False
    client_secret: str | None = None
    payment_intent_id: str | None = None
    subscription_id: str | None = None
    status: str | None = None
    error: str | None = None

"""Pydantic schemas for payment intents and checkout results."""
import enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from marketplace.schemas.error import PaymentErrorDetail


class CheckoutFlow(str, enum.Enum):
    """Which payment method funds the charge."""

    EXPRESS = "express"  # the user's default saved method
    SELECTIVE = "selective"  # an explicitly chosen saved method
    ONE_TIME = "one-time"  # card entered in the payment sheet


class CheckoutState(str, enum.Enum):
    """States of one orchestrated payment attempt."""

    IDLE = "idle"
    INTENT_CREATED = "intent_created"
    ACTION_REQUIRED = "action_required"
    CONFIRMING = "confirming"
    PENDING_VERIFICATION = "pending_verification"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATES = frozenset({CheckoutState.SUCCEEDED, CheckoutState.FAILED, CheckoutState.CANCELED})


class IntentStatus(str, enum.Enum):
    """Payment intent status as reported by the processor."""

    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class PaymentIntent(BaseModel):
    """
    One server-issued charge attempt.

    The client secret is single use and wrapped in ``SecretStr`` so it never
    shows up in reprs or log lines.
    """

    id: str
    client_secret: SecretStr | None = None
    amount: int | None = None
    currency: str | None = None
    status: IntentStatus | None = None

    @property
    def requires_action(self) -> bool:
        return self.status == IntentStatus.REQUIRES_ACTION

    @property
    def succeeded(self) -> bool:
        return self.status == IntentStatus.SUCCEEDED

    @property
    def has_client_secret(self) -> bool:
        return self.client_secret is not None and bool(self.client_secret.get_secret_value())


class CheckoutOptions(BaseModel):
    """Caller input for one checkout attempt."""

    amount: int = Field(..., strict=True, description="Amount in cents")
    description: str | None = None
    payment_method_id: str | None = Field(default=None, description="Local payment method id (selective flow)")
    metadata: dict[str, str] = Field(default_factory=dict)


class PaymentResult(BaseModel):
    """
    Outcome of an orchestrated payment.

    ``success`` is only true once the backend confirmed the charge
    (``verified``). A canceled attempt has ``success=False`` and no error.
    """

    success: bool
    state: CheckoutState
    payment_intent_id: str | None = None
    status: IntentStatus | None = None
    verified: bool = False
    error: PaymentErrorDetail | None = None

    model_config = ConfigDict(use_enum_values=False)

    @property
    def canceled(self) -> bool:
        return self.state == CheckoutState.CANCELED

    @property
    def pending_verification(self) -> bool:
        return self.state == CheckoutState.PENDING_VERIFICATION

    @property
    def message(self) -> str | None:
        """Single human-readable line for the UI."""
        if self.error is not None:
            return self.error.message
        if self.canceled:
            return "Payment canceled"
        if self.pending_verification:
            return "Payment is being confirmed"
        return None

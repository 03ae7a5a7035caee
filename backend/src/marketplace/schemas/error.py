"""Structured error payloads shared by the checkout core and the backend API."""
import enum

from pydantic import BaseModel, Field


class PaymentErrorType(str, enum.Enum):
    """Closed set of failure classes the UI can act on."""

    VALIDATION = "validation"  # fix input
    NETWORK = "network"  # retry with a fresh intent
    STRIPE = "stripe"  # processor decision, surfaced verbatim
    AUTH = "auth"  # re-authenticate first


class PaymentErrorDetail(BaseModel):
    """Error as handed to UI code inside a PaymentResult."""

    type: PaymentErrorType = Field(..., description="Error class")
    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    retryable: bool = Field(default=False, description="Whether retrying the whole attempt can succeed")


class BackendErrorResponse(BaseModel):
    """JSON body returned by the backend for failed function calls."""

    error: str = Field(..., description="Human-readable error message")
    type: PaymentErrorType = Field(default=PaymentErrorType.STRIPE, description="Error class")
    code: str | None = Field(default=None, description="Machine-readable error code")


class ErrorCode:
    """Standard error codes used across checkout and subscriptions."""

    # Validation errors
    VALIDATION_ERROR = "validation_error"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_CHECKOUT_FLOW = "invalid_checkout_flow"
    INVALID_PAYMENT_OPTION = "invalid_payment_option"
    INVALID_QUANTITY = "invalid_quantity"
    INVALID_CART_ITEM = "invalid_cart_item"
    CART_EMPTY = "cart_empty"
    CART_LIMIT_EXCEEDED = "cart_limit_exceeded"
    CART_ITEM_NOT_FOUND = "cart_item_not_found"
    PAYMENT_IN_PROGRESS = "payment_in_progress"
    NO_DEFAULT_PAYMENT_METHOD = "no_default_payment_method"
    PAYMENT_METHOD_REQUIRED = "payment_method_required"
    PAYMENT_METHOD_NOT_FOUND = "payment_method_not_found"
    PAYMENT_INTENT_NOT_FOUND = "payment_intent_not_found"
    PLAN_NOT_FOUND = "plan_not_found"
    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    SUBSCRIPTION_NOT_CANCELABLE = "subscription_not_cancelable"
    SUBSCRIPTION_CANCEL_SCHEDULED = "subscription_cancel_scheduled"
    SUBSCRIPTION_ALREADY_ACTIVE = "subscription_already_active"
    ORDER_NOT_FOUND = "order_not_found"
    INVALID_STATE_TRANSITION = "invalid_state_transition"

    # Network errors
    NETWORK_ERROR = "network_error"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    BACKEND_UNAVAILABLE = "backend_unavailable"

    # Processor errors
    PROCESSOR_ERROR = "processor_error"
    MISSING_CLIENT_SECRET = "missing_client_secret"
    PAYMENT_SHEET_INIT_FAILED = "payment_sheet_init_failed"
    PAYMENT_SHEET_FAILED = "payment_sheet_failed"
    PAYMENT_NOT_COMPLETED = "payment_not_completed"
    CARD_DECLINED = "card_declined"

    # Auth errors
    SESSION_EXPIRED = "session_expired"
    NOT_AUTHENTICATED = "not_authenticated"

    # Persistence
    ORDER_INCONSISTENT = "order_inconsistent"
    UNEXPECTED_ERROR = "unexpected_error"


# Messages shown when the raw error text is not fit for users
USER_MESSAGES = {
    ErrorCode.PAYMENT_IN_PROGRESS: "Another payment is already in progress",
    ErrorCode.CONFIRMATION_TIMEOUT: "Payment sheet presentation timed out. Please try again.",
    ErrorCode.NO_DEFAULT_PAYMENT_METHOD: "No default payment method available",
    ErrorCode.PAYMENT_METHOD_NOT_FOUND: "Selected payment method not found",
    ErrorCode.SESSION_EXPIRED: "Your session has expired. Please sign in again.",
    ErrorCode.BACKEND_UNAVAILABLE: "Payment service is temporarily unavailable. Please try again later.",
    ErrorCode.UNEXPECTED_ERROR: "Checkout failed",
}

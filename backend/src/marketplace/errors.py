"""Typed payment errors.

Every failure raised by the payment method store, the intent gateway, the cart
and order services belongs to exactly one of four classes. The orchestrators
catch ``PaymentError`` and turn it into a ``PaymentResult`` so UI code only ever
inspects ``error.type``.
"""
from typing import ClassVar

from marketplace.schemas.error import USER_MESSAGES, ErrorCode, PaymentErrorDetail, PaymentErrorType


class PaymentError(Exception):
    """Base class for all checkout failures."""

    type: ClassVar[PaymentErrorType] = PaymentErrorType.NETWORK
    retryable: ClassVar[bool] = False
    default_code: ClassVar[str] = ErrorCode.UNEXPECTED_ERROR

    def __init__(self, message: str | None = None, code: str | None = None):
        self.code = code or self.default_code
        self.message = message or USER_MESSAGES.get(self.code, "Payment failed")
        super().__init__(self.message)

    def to_detail(self) -> PaymentErrorDetail:
        """Convert to the serializable error attached to results."""
        return PaymentErrorDetail(
            type=self.type,
            code=self.code,
            message=self.message,
            retryable=self.retryable,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(code={self.code!r}, message={self.message!r})>"


class PaymentValidationError(PaymentError):
    """Bad caller input. Never retried automatically."""

    type = PaymentErrorType.VALIDATION
    default_code = ErrorCode.VALIDATION_ERROR


class PaymentNetworkError(PaymentError):
    """Transient failure. Safe to retry the whole attempt with a new intent."""

    type = PaymentErrorType.NETWORK
    retryable = True
    default_code = ErrorCode.NETWORK_ERROR


class ProcessorError(PaymentError):
    """Decision or failure reported by the payment processor."""

    type = PaymentErrorType.STRIPE
    default_code = ErrorCode.PROCESSOR_ERROR


class PaymentAuthError(PaymentError):
    """Session missing or expired. Re-authentication is required before retrying."""

    type = PaymentErrorType.AUTH
    default_code = ErrorCode.SESSION_EXPIRED


ERROR_CLASSES: dict[PaymentErrorType, type[PaymentError]] = {
    PaymentErrorType.VALIDATION: PaymentValidationError,
    PaymentErrorType.NETWORK: PaymentNetworkError,
    PaymentErrorType.STRIPE: ProcessorError,
    PaymentErrorType.AUTH: PaymentAuthError,
}


def error_for(error_type: PaymentErrorType, message: str, code: str | None = None) -> PaymentError:
    """Build the exception matching a serialized error type."""
    return ERROR_CLASSES[error_type](message, code=code)


def in_progress_error() -> PaymentValidationError:
    """Error returned to a caller arriving while the payment sheet is busy."""
    return PaymentValidationError(code=ErrorCode.PAYMENT_IN_PROGRESS)

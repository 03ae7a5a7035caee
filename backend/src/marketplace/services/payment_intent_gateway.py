"""Payment intent gateway.

Creates and re-reads payment intents through the backend. The gateway never
decides whether a payment succeeded: it reports what the backend says and
leaves the decision to the orchestrators.
"""
from uuid import uuid4

import structlog

from marketplace.adapters.backend_client import BackendClient
from marketplace.config import settings
from marketplace.errors import PaymentValidationError
from marketplace.schemas.backend import CreatePaymentIntentRequest
from marketplace.schemas.error import ErrorCode
from marketplace.schemas.payment import PaymentIntent

logger = structlog.get_logger(__name__)


def validate_amount(amount: object) -> int:
    """
    Check that an amount is a positive integer number of cents.

    Raises:
        PaymentValidationError: Zero, negative, fractional or non-numeric amounts
    """
    # bool is an int subclass; True is not an amount
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise PaymentValidationError(
            f"Amount must be an integer number of cents, got {amount!r}",
            code=ErrorCode.INVALID_AMOUNT,
        )
    if amount <= 0:
        raise PaymentValidationError(
            f"Amount must be positive, got {amount}",
            code=ErrorCode.INVALID_AMOUNT,
        )
    return amount


class PaymentIntentGateway:
    """Service layer for payment intent creation and verification."""

    def __init__(self, backend: BackendClient, currency: str | None = None):
        """Initialize gateway with a backend client."""
        self.backend = backend
        self.currency = currency or settings.currency

    async def create_intent(
        self,
        amount: int,
        description: str | None = None,
        payment_method_id: str | None = None,
        seller_id: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> PaymentIntent:
        """
        Create a new payment intent.

        Every call creates a distinct intent; nothing is cached, and each
        request carries a fresh idempotency key so a retry is a new attempt.

        Args:
            amount: Amount in cents
            description: Statement description
            payment_method_id: Processor token of a saved method; omitted for one-time payments
            seller_id: Recipient merchant for marketplace charges
            metadata: Extra metadata stored on the intent

        Returns:
            The created intent, with whatever status the backend reported

        Raises:
            PaymentValidationError: Invalid amount, raised before any network call
            PaymentError: Backend or processor failure
        """
        validate_amount(amount)

        request = CreatePaymentIntentRequest(
            amount=amount,
            description=description,
            payment_method_id=payment_method_id,
            currency=self.currency,
            seller_id=seller_id,
            idempotency_key=f"pi_{uuid4().hex}",
            metadata=metadata or {},
        )
        intent = await self.backend.create_payment_intent(request)

        logger.info(
            "payment_intent_created",
            payment_intent_id=intent.id,
            amount=amount,
            status=intent.status.value if intent.status else None,
            saved_method=payment_method_id is not None,
            has_client_secret=intent.has_client_secret,
        )
        return intent

    async def retrieve_intent(self, payment_intent_id: str) -> PaymentIntent:
        """
        Re-read an intent from the backend.

        Used after the client believes a payment finished, since the backend
        is the source of truth for whether the charge landed.
        """
        intent = await self.backend.retrieve_payment_intent(payment_intent_id)
        logger.info(
            "payment_intent_retrieved",
            payment_intent_id=intent.id,
            status=intent.status.value if intent.status else None,
        )
        return intent

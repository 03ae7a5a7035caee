"""Payment method service for saved, tokenized instruments."""
from uuid import UUID

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.adapters.backend_client import BackendClient
from marketplace.errors import PaymentValidationError, ProcessorError
from marketplace.models.payment_method import PaymentMethod
from marketplace.schemas.error import ErrorCode
from marketplace.schemas.payment_method import ProcessorPaymentMethod
from marketplace.services.confirmation import ConfirmationOutcome, ConfirmationPresenter

logger = structlog.get_logger(__name__)


class PaymentMethodService:
    """Service layer for payment method operations."""

    def __init__(
        self,
        db: AsyncSession,
        backend: BackendClient,
        presenter: ConfirmationPresenter | None = None,
    ):
        """Initialize payment method service."""
        self.db = db
        self.backend = backend
        self.presenter = presenter

    async def list_payment_methods(self, user_id: str) -> list[PaymentMethod]:
        """
        List a user's payment methods, most recently added first.

        Args:
            user_id: Owner of the methods

        Returns:
            List of payment methods
        """
        result = await self.db.execute(
            select(PaymentMethod)
            .where(PaymentMethod.user_id == user_id)
            .order_by(PaymentMethod.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_payment_method(self, user_id: str, payment_method_id: UUID | str) -> PaymentMethod | None:
        """
        Get one of the user's payment methods by local ID.

        Returns:
            Payment method or None when it does not exist or belongs to someone else
        """
        try:
            pm_id = payment_method_id if isinstance(payment_method_id, UUID) else UUID(str(payment_method_id))
        except ValueError:
            return None

        result = await self.db.execute(
            select(PaymentMethod).where(PaymentMethod.id == pm_id, PaymentMethod.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def _require(self, user_id: str, payment_method_id: UUID | str) -> PaymentMethod:
        payment_method = await self.get_payment_method(user_id, payment_method_id)
        if payment_method is None:
            raise PaymentValidationError(
                f"Payment method {payment_method_id} not found",
                code=ErrorCode.PAYMENT_METHOD_NOT_FOUND,
            )
        return payment_method

    async def add_via_setup_flow(self, user_id: str) -> PaymentMethod | None:
        """
        Save a new card through a setup intent and the payment sheet.

        The first method a user saves becomes the default.

        Args:
            user_id: Owner of the new method

        Returns:
            The registered payment method, or None if the user dismissed the sheet

        Raises:
            PaymentValidationError: The payment sheet is already in use
            PaymentError: Backend, processor or sheet failure
        """
        if self.presenter is None:
            raise RuntimeError("A confirmation presenter is required for the setup flow")

        async with self.presenter.lock.hold("setup"):
            setup_intent = await self.backend.create_setup_intent()
            logger.info("setup_intent_created", user_id=user_id, setup_intent_id=setup_intent.setup_intent_id)

            outcome = await self.presenter.confirm_locked(
                self.presenter.setup_config(setup_intent.client_secret),
                owner="setup",
            )

        if outcome == ConfirmationOutcome.CANCELED:
            logger.info("setup_flow_canceled", user_id=user_id)
            return None

        confirmed = await self.backend.retrieve_setup_intent(setup_intent.setup_intent_id)
        if confirmed.status != "succeeded" or confirmed.payment_method is None:
            raise ProcessorError(
                f"Card setup did not complete (status: {confirmed.status})",
                code=ErrorCode.PAYMENT_NOT_COMPLETED,
            )

        return await self._register(user_id, confirmed.payment_method)

    async def register_payment_method(self, user_id: str, processor_token: str) -> PaymentMethod:
        """
        Register a processor token the user already confirmed.

        Args:
            user_id: Owner of the method
            processor_token: Processor payment method ID (pm_...)

        Returns:
            The stored payment method (existing row if the token is already known)
        """
        details = await self.backend.get_payment_method(processor_token)
        return await self._register(user_id, details)

    async def _register(self, user_id: str, details: ProcessorPaymentMethod) -> PaymentMethod:
        existing = await self.db.execute(
            select(PaymentMethod).where(PaymentMethod.processor_token == details.id)
        )
        payment_method = existing.scalar_one_or_none()
        if payment_method is not None:
            if payment_method.user_id != user_id:
                raise PaymentValidationError(
                    "Payment method belongs to another account",
                    code=ErrorCode.PAYMENT_METHOD_NOT_FOUND,
                )
            return payment_method

        count_result = await self.db.execute(
            select(func.count()).select_from(PaymentMethod).where(PaymentMethod.user_id == user_id)
        )
        is_first = count_result.scalar_one() == 0

        payment_method = PaymentMethod(
            user_id=user_id,
            processor_token=details.id,
            type=details.type,
            brand=details.brand,
            last4=details.last4,
            exp_month=details.exp_month,
            exp_year=details.exp_year,
            is_default=is_first,
        )
        self.db.add(payment_method)
        await self.db.flush()
        await self.db.refresh(payment_method)

        logger.info(
            "payment_method_registered",
            user_id=user_id,
            payment_method_id=str(payment_method.id),
            brand=payment_method.brand,
            is_default=is_first,
        )
        return payment_method

    async def remove_payment_method(self, user_id: str, payment_method_id: UUID | str) -> None:
        """
        Remove a payment method.

        The processor token is detached first. If detaching fails the local
        row is kept, so the list never hides a card that can still be charged.
        Removing the default promotes the most recent remaining method.

        Raises:
            PaymentValidationError: Method not found
            PaymentError: Detach failed; nothing was deleted
        """
        payment_method = await self._require(user_id, payment_method_id)
        was_default = payment_method.is_default

        await self.backend.detach_payment_method(payment_method.processor_token)

        await self.db.delete(payment_method)
        await self.db.flush()

        logger.info("payment_method_removed", user_id=user_id, payment_method_id=str(payment_method.id))

        if was_default:
            remaining = await self.list_payment_methods(user_id)
            if remaining:
                await self._swap_default(user_id, remaining[0].id)
                logger.info(
                    "payment_method_default_promoted",
                    user_id=user_id,
                    payment_method_id=str(remaining[0].id),
                )

    async def set_default_payment_method(self, user_id: str, payment_method_id: UUID | str) -> PaymentMethod:
        """
        Make one method the user's default.

        The processor is updated first; the local flags are then swapped in a
        single UPDATE so there is never a moment with zero or two defaults.

        Returns:
            Updated payment method

        Raises:
            PaymentValidationError: Method not found
            PaymentError: Processor update failed; local flags untouched
        """
        payment_method = await self._require(user_id, payment_method_id)

        await self.backend.set_default_payment_method(payment_method.processor_token)
        await self._swap_default(user_id, payment_method.id)

        refreshed = await self._require(user_id, payment_method.id)
        logger.info("payment_method_default_set", user_id=user_id, payment_method_id=str(refreshed.id))
        return refreshed

    async def _swap_default(self, user_id: str, payment_method_id: UUID) -> None:
        await self.db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == user_id)
            .values(is_default=case((PaymentMethod.id == payment_method_id, True), else_=False))
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()
        # Reload rows already in the session so the swap is visible to callers
        await self.list_payment_methods(user_id)

    async def get_default_payment_method(self, user_id: str) -> PaymentMethod | None:
        """
        Get the user's default payment method.

        Falls back to the most recently added method when no row is flagged.
        """
        methods = await self.list_payment_methods(user_id)
        return next((pm for pm in methods if pm.is_default), methods[0] if methods else None)

    async def validate_payment_method(self, user_id: str, payment_method_id: str) -> PaymentMethod | None:
        """
        Look up a method the UI selected.

        Accepts either the local ID or the processor token, and only matches
        methods the user currently owns, so stale UI state pointing at a
        removed card is caught here.
        """
        methods = await self.list_payment_methods(user_id)
        for pm in methods:
            if str(pm.id) == str(payment_method_id) or pm.processor_token == payment_method_id:
                return pm
        return None

"""Checkout orchestration.

``CheckoutOrchestrator`` runs one payment attempt through the express,
selective or one-time flow and always returns a ``PaymentResult``.
``CartCheckoutService`` drives a whole cart, one merchant group at a time,
and records an order for every group whose payment the backend verified.
"""
from typing import Callable, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError

from marketplace.errors import (
    PaymentError,
    PaymentNetworkError,
    PaymentValidationError,
    ProcessorError,
)
from marketplace.models.order import OrderStatus
from marketplace.models.payment_method import PaymentMethod
from marketplace.schemas.cart import UNKNOWN_SELLER_ID, CartSummary
from marketplace.schemas.error import ErrorCode, PaymentErrorDetail
from marketplace.schemas.order import OrderRead
from marketplace.schemas.payment import (
    CheckoutFlow,
    CheckoutOptions,
    CheckoutState,
    IntentStatus,
    PaymentIntent,
    PaymentResult,
)
from marketplace.services.cart_service import CartService
from marketplace.services.confirmation import ConfirmationOutcome, ConfirmationPresenter
from marketplace.services.order_service import OrderService
from marketplace.services.payment_intent_gateway import PaymentIntentGateway, validate_amount
from marketplace.services.payment_method_service import PaymentMethodService

logger = structlog.get_logger(__name__)

# Statuses that mean the charge may still land
PENDING_STATUSES = frozenset({IntentStatus.PROCESSING, IntentStatus.REQUIRES_CAPTURE})


class CheckoutAttempt:
    """Progress of one payment attempt, reported through ``on_state_change``."""

    def __init__(self, user_id: str, on_state_change: Optional[Callable[[CheckoutState], None]] = None):
        self.user_id = user_id
        self.state = CheckoutState.IDLE
        self.on_state_change = on_state_change

    def transition(self, state: CheckoutState) -> None:
        logger.debug(
            "checkout_state_changed",
            user_id=self.user_id,
            from_state=self.state.value,
            to_state=state.value,
        )
        self.state = state
        if self.on_state_change is not None:
            self.on_state_change(state)


class CheckoutOrchestrator:
    """
    State machine for a single payment attempt.

    idle -> intent_created -> (action_required -> confirming)? ->
    pending_verification -> succeeded | failed | canceled

    Every attempt creates exactly one payment intent; retrying after a
    failure means calling ``process_checkout`` again. State lives on the
    attempt, not the orchestrator, so one instance can serve overlapping calls.
    """

    def __init__(
        self,
        methods: PaymentMethodService,
        gateway: PaymentIntentGateway,
        presenter: ConfirmationPresenter,
        on_state_change: Optional[Callable[[CheckoutState], None]] = None,
    ):
        """
        Initialize orchestrator with its collaborators.

        Args:
            methods: Saved payment method store
            gateway: Payment intent gateway
            presenter: Payment sheet presenter holding the app-wide lock
            on_state_change: Called with every state the attempt enters
        """
        self.methods = methods
        self.gateway = gateway
        self.presenter = presenter
        self.on_state_change = on_state_change

    async def process_checkout(
        self,
        user_id: str,
        flow: CheckoutFlow | str,
        options: CheckoutOptions,
        seller_id: Optional[str] = None,
    ) -> PaymentResult:
        """
        Run one payment attempt.

        Args:
            user_id: Paying user
            flow: express, selective or one-time
            options: Amount, description and (selective) payment method
            seller_id: Merchant receiving the funds

        Returns:
            Result of the attempt. Errors are reported in ``result.error`` and
            never raised.
        """
        attempt = CheckoutAttempt(user_id, self.on_state_change)
        intent: Optional[PaymentIntent] = None

        try:
            try:
                flow = CheckoutFlow(flow)
            except ValueError as e:
                raise PaymentValidationError(
                    f"Unknown checkout flow: {flow}",
                    code=ErrorCode.INVALID_CHECKOUT_FLOW,
                ) from e
            validate_amount(options.amount)

            logger.info(
                "checkout_started",
                user_id=user_id,
                flow=flow.value,
                amount=options.amount,
                seller_id=seller_id,
            )

            if flow == CheckoutFlow.ONE_TIME:
                intent, outcome = await self._run_one_time(attempt, options, seller_id)
            else:
                payment_method = await self._resolve_saved_method(user_id, flow, options)
                intent, outcome = await self._run_saved(attempt, flow, payment_method, options, seller_id)

            if outcome == ConfirmationOutcome.CANCELED:
                return self._canceled(attempt, intent)

            return await self._verify(attempt, intent)

        except PaymentError as e:
            return self._failed(attempt, e, intent)
        except Exception:
            logger.exception("checkout_unexpected_error", user_id=user_id)
            return self._failed(attempt, PaymentNetworkError(code=ErrorCode.UNEXPECTED_ERROR), intent)

    async def _resolve_saved_method(
        self,
        user_id: str,
        flow: CheckoutFlow,
        options: CheckoutOptions,
    ) -> PaymentMethod:
        if flow == CheckoutFlow.EXPRESS:
            payment_method = await self.methods.get_default_payment_method(user_id)
            if payment_method is None:
                raise PaymentValidationError(code=ErrorCode.NO_DEFAULT_PAYMENT_METHOD)
            return payment_method

        if not options.payment_method_id:
            raise PaymentValidationError(
                "Select a payment method to continue",
                code=ErrorCode.PAYMENT_METHOD_REQUIRED,
            )
        payment_method = await self.methods.validate_payment_method(user_id, options.payment_method_id)
        if payment_method is None:
            logger.warning(
                "checkout_unknown_payment_method",
                user_id=user_id,
                payment_method_id=options.payment_method_id,
            )
            raise PaymentValidationError(code=ErrorCode.PAYMENT_METHOD_NOT_FOUND)
        return payment_method

    async def _run_saved(
        self,
        attempt: CheckoutAttempt,
        flow: CheckoutFlow,
        payment_method: PaymentMethod,
        options: CheckoutOptions,
        seller_id: Optional[str],
    ) -> tuple[PaymentIntent, ConfirmationOutcome]:
        intent = await self.gateway.create_intent(
            options.amount,
            description=options.description,
            payment_method_id=payment_method.processor_token,
            seller_id=seller_id,
            metadata=options.metadata,
        )
        attempt.transition(CheckoutState.INTENT_CREATED)

        if not intent.requires_action:
            return intent, ConfirmationOutcome.COMPLETED

        # Step-up authentication drives the same singleton sheet
        attempt.transition(CheckoutState.ACTION_REQUIRED)
        self._require_client_secret(intent)
        attempt.transition(CheckoutState.CONFIRMING)
        outcome = await self.presenter.confirm(
            self.presenter.payment_config(intent.client_secret),
            owner=flow.value,
        )
        return intent, outcome

    async def _run_one_time(
        self,
        attempt: CheckoutAttempt,
        options: CheckoutOptions,
        seller_id: Optional[str],
    ) -> tuple[PaymentIntent, ConfirmationOutcome]:
        # The lock is taken before the intent exists so a double tap never creates a second intent
        async with self.presenter.lock.hold(CheckoutFlow.ONE_TIME.value):
            intent = await self.gateway.create_intent(
                options.amount,
                description=options.description,
                seller_id=seller_id,
                metadata=options.metadata,
            )
            attempt.transition(CheckoutState.INTENT_CREATED)
            self._require_client_secret(intent)

            attempt.transition(CheckoutState.ACTION_REQUIRED)
            attempt.transition(CheckoutState.CONFIRMING)
            outcome = await self.presenter.confirm_locked(
                self.presenter.payment_config(intent.client_secret),
                owner=CheckoutFlow.ONE_TIME.value,
            )
        return intent, outcome

    @staticmethod
    def _require_client_secret(intent: PaymentIntent) -> None:
        if not intent.has_client_secret:
            raise ProcessorError(
                "Payment could not be started: missing client secret",
                code=ErrorCode.MISSING_CLIENT_SECRET,
            )

    async def _verify(self, attempt: CheckoutAttempt, intent: PaymentIntent) -> PaymentResult:
        """
        Ask the backend whether the charge actually landed.

        A closed sheet only proves the client finished its part. Nothing
        downstream may treat the payment as done until this returns
        ``succeeded``.
        """
        attempt.transition(CheckoutState.PENDING_VERIFICATION)

        try:
            confirmed = await self.gateway.retrieve_intent(intent.id)
        except PaymentError as e:
            # The charge may have landed, so this is not a failure the user should retry
            logger.warning(
                "checkout_verification_unavailable",
                user_id=attempt.user_id,
                payment_intent_id=intent.id,
                code=e.code,
            )
            return PaymentResult(
                success=False,
                state=CheckoutState.PENDING_VERIFICATION,
                payment_intent_id=intent.id,
                status=intent.status,
                error=e.to_detail(),
            )

        if confirmed.status == IntentStatus.SUCCEEDED:
            attempt.transition(CheckoutState.SUCCEEDED)
            logger.info("checkout_succeeded", user_id=attempt.user_id, payment_intent_id=intent.id)
            return PaymentResult(
                success=True,
                state=CheckoutState.SUCCEEDED,
                payment_intent_id=intent.id,
                status=confirmed.status,
                verified=True,
            )

        if confirmed.status is None or confirmed.status in PENDING_STATUSES:
            logger.info(
                "checkout_pending_verification",
                user_id=attempt.user_id,
                payment_intent_id=intent.id,
                status=confirmed.status.value if confirmed.status else None,
            )
            return PaymentResult(
                success=False,
                state=CheckoutState.PENDING_VERIFICATION,
                payment_intent_id=intent.id,
                status=confirmed.status,
            )

        error = ProcessorError(
            f"Payment was not completed (status: {confirmed.status.value})",
            code=ErrorCode.PAYMENT_NOT_COMPLETED,
        )
        return self._failed(attempt, error, confirmed)

    def _failed(self, attempt: CheckoutAttempt, error: PaymentError, intent: Optional[PaymentIntent]) -> PaymentResult:
        attempt.transition(CheckoutState.FAILED)
        logger.warning(
            "checkout_failed",
            user_id=attempt.user_id,
            error_type=error.type.value,
            code=error.code,
            payment_intent_id=intent.id if intent else None,
        )
        return PaymentResult(
            success=False,
            state=CheckoutState.FAILED,
            payment_intent_id=intent.id if intent else None,
            status=intent.status if intent else None,
            error=error.to_detail(),
        )

    def _canceled(self, attempt: CheckoutAttempt, intent: PaymentIntent) -> PaymentResult:
        attempt.transition(CheckoutState.CANCELED)
        logger.info("checkout_canceled", user_id=attempt.user_id, payment_intent_id=intent.id)
        return PaymentResult(
            success=False,
            state=CheckoutState.CANCELED,
            payment_intent_id=intent.id,
        )


class CartCheckoutResult(BaseModel):
    """Outcome of checking out a whole cart."""

    success: bool
    summary: CartSummary
    orders: list[OrderRead] = Field(default_factory=list)
    results: list[PaymentResult] = Field(default_factory=list)
    error: Optional[PaymentErrorDetail] = None

    @property
    def canceled(self) -> bool:
        return bool(self.results) and self.results[-1].canceled


class CartCheckoutService:
    """Checks out a cart merchant by merchant."""

    def __init__(
        self,
        cart: CartService,
        orders: OrderService,
        orchestrator: CheckoutOrchestrator,
    ):
        self.cart = cart
        self.orders = orders
        self.orchestrator = orchestrator

    async def checkout_cart(
        self,
        user_id: str,
        flow: CheckoutFlow | str,
        payment_method_id: Optional[str] = None,
        on_group_start: Optional[Callable[[int, int], None]] = None,
    ) -> CartCheckoutResult:
        """
        Pay for and record every merchant group in the cart.

        Groups are processed one after another. Each group is charged its own
        share of the cart total; after the backend verifies the charge, the
        group's order is stored and completed, and only then are the group's
        lines removed from the cart. A group with nothing to pay is recorded
        without a charge. Processing stops at the first group that does not
        succeed; groups already paid keep their orders.

        Args:
            user_id: Paying user
            flow: Checkout flow used for every group
            payment_method_id: Saved method for the selective flow
            on_group_start: Progress callback receiving (group index, group count)

        Returns:
            Aggregate result with the orders created so far
        """
        summary = await self.cart.get_summary(user_id)
        if summary.is_empty:
            error = PaymentValidationError("Your cart is empty", code=ErrorCode.CART_EMPTY)
            return CartCheckoutResult(success=False, summary=summary, error=error.to_detail())

        result = CartCheckoutResult(success=False, summary=summary)
        group_count = len(summary.merchant_groups)

        for index, group in enumerate(summary.merchant_groups):
            if on_group_start is not None:
                on_group_start(index, group_count)

            if group.total == 0:
                # Nothing to charge, the order is complete once it is recorded
                logger.info("cart_checkout_free_group", user_id=user_id, seller_id=group.seller_id)
                payment_intent_id = None
            else:
                try:
                    options = CheckoutOptions(
                        amount=group.total,
                        description=f"Order from {group.merchant_name}",
                        payment_method_id=payment_method_id,
                        metadata={"seller_id": group.seller_id, "item_count": str(group.item_count)},
                    )
                except ValidationError:
                    result.error = PaymentValidationError(code=ErrorCode.INVALID_AMOUNT).to_detail()
                    return result

                seller_id = None if group.seller_id == UNKNOWN_SELLER_ID else group.seller_id
                payment = await self.orchestrator.process_checkout(user_id, flow, options, seller_id=seller_id)
                result.results.append(payment)

                if not payment.success:
                    result.error = payment.error
                    logger.info(
                        "cart_checkout_stopped",
                        user_id=user_id,
                        seller_id=group.seller_id,
                        state=payment.state.value,
                        paid_groups=len(result.orders),
                    )
                    return result
                payment_intent_id = payment.payment_intent_id

            try:
                order = await self.orders.create_order(user_id, group, payment_intent_id=payment_intent_id)
                order = await self.orders.update_status(order.id, OrderStatus.COMPLETED)
            except PaymentError as e:
                # Charged but not recorded; keep the cart lines for reconciliation
                logger.error(
                    "cart_checkout_order_failed",
                    user_id=user_id,
                    seller_id=group.seller_id,
                    payment_intent_id=payment_intent_id,
                    code=e.code,
                )
                result.error = PaymentError(
                    "Payment succeeded but the order could not be saved",
                    code=ErrorCode.ORDER_INCONSISTENT,
                ).to_detail()
                return result

            result.orders.append(OrderRead.model_validate(order))
            await self.cart.remove_items(user_id, [item.id for item in group.items])

        result.success = True
        logger.info(
            "cart_checkout_completed",
            user_id=user_id,
            order_count=len(result.orders),
            total_amount=summary.total,
        )
        return result

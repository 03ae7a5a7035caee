"""Subscription service for merchant plan purchases."""
import asyncio
from datetime import datetime
from typing import Callable, Optional, List
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.adapters.backend_client import BackendClient
from marketplace.config import settings
from marketplace.errors import PaymentError, PaymentNetworkError, PaymentValidationError, ProcessorError
from marketplace.models.subscription import MerchantPlan, Subscription, SubscriptionStatus, SubscriptionType
from marketplace.schemas.error import ErrorCode
from marketplace.schemas.payment import CheckoutState, IntentStatus, PaymentResult
from marketplace.schemas.subscription import PaymentOption, SubscriptionPurchaseResponse
from marketplace.services.confirmation import ConfirmationOutcome, ConfirmationPresenter
from marketplace.services.payment_intent_gateway import PaymentIntentGateway
from marketplace.services.payment_method_service import PaymentMethodService

logger = structlog.get_logger(__name__)

# Backend statuses that mean the plan is already paid
ACTIVE_STATUSES = frozenset({"active", "trialing", "succeeded"})


class SubscriptionService:
    """Service layer for merchant plan purchase and lifecycle."""

    def __init__(
        self,
        db: AsyncSession,
        backend: BackendClient,
        methods: PaymentMethodService,
        gateway: PaymentIntentGateway,
        presenter: ConfirmationPresenter,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize subscription service.

        Args:
            db: Database session
            backend: Backend client for the subscription-checkout function
            methods: Saved payment method store
            gateway: Gateway used to verify plan payments
            presenter: Payment sheet presenter shared with checkout
            clock: Source of "now" for expiry checks
        """
        self.db = db
        self.backend = backend
        self.methods = methods
        self.gateway = gateway
        self.presenter = presenter
        self.clock = clock
        self.subscription: Optional[Subscription] = None

    async def list_plans(self) -> List[MerchantPlan]:
        """List active plans, cheapest first."""
        result = await self.db.execute(
            select(MerchantPlan)
            .where(MerchantPlan.is_active.is_(True))
            .order_by(MerchantPlan.price_amount.asc())
        )
        return list(result.scalars().all())

    async def get_plan(self, plan_id: UUID | str) -> Optional[MerchantPlan]:
        """
        Get plan by ID.

        Returns:
            Plan if found, None otherwise (including malformed IDs)
        """
        try:
            plan_uuid = plan_id if isinstance(plan_id, UUID) else UUID(str(plan_id))
        except ValueError:
            return None
        result = await self.db.execute(select(MerchantPlan).where(MerchantPlan.id == plan_uuid))
        return result.scalar_one_or_none()

    async def get_user_subscription(self, user_id: str) -> Optional[Subscription]:
        """Get the user's most recent subscription record."""
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        self.subscription = result.scalar_one_or_none()
        return self.subscription

    async def purchase(
        self,
        user_id: str,
        plan_id: str,
        option: PaymentOption | str,
        payment_method_id: Optional[str] = None,
    ) -> PaymentResult:
        """
        Purchase a merchant plan.

        The payment option decides the route, whatever else is passed:

        - ``express`` charges the default saved method and fails if there is none
        - ``saved`` charges ``payment_method_id``, which must belong to the user
        - ``one_time`` never sends a saved method and always opens the payment sheet

        Args:
            user_id: Purchasing user
            plan_id: Plan to buy
            option: Payment option
            payment_method_id: Local ID or processor token of a saved method (``saved`` only)

        Returns:
            Result of the purchase. Errors are reported in ``result.error``.
        """
        payment_intent_id: Optional[str] = None
        try:
            try:
                option = PaymentOption(option)
            except ValueError as e:
                raise PaymentValidationError(
                    f"Unknown payment option: {option}",
                    code=ErrorCode.INVALID_PAYMENT_OPTION,
                ) from e

            plan = await self.get_plan(plan_id)
            if plan is None or not plan.is_active:
                raise PaymentValidationError(f"Plan {plan_id} not found", code=ErrorCode.PLAN_NOT_FOUND)

            logger.info(
                "subscription_purchase_started",
                user_id=user_id,
                plan_id=str(plan.id),
                payment_option=option.value,
                amount=plan.price_amount,
            )

            if option == PaymentOption.ONE_TIME:
                # Taken before the backend call so a double tap never creates a second intent
                async with self.presenter.lock.hold(f"subscription:{option.value}"):
                    response = await self._create(plan, option, None)
                    payment_intent_id = response.payment_intent_id
                    outcome = await self._confirm_if_needed(response, locked=True, always=True)
            else:
                processor_token = await self._resolve_method(user_id, option, payment_method_id)
                response = await self._create(plan, option, processor_token)
                payment_intent_id = response.payment_intent_id
                outcome = await self._confirm_if_needed(response, locked=False, always=False)

            if outcome == ConfirmationOutcome.CANCELED:
                logger.info("subscription_purchase_canceled", user_id=user_id, plan_id=str(plan.id))
                return PaymentResult(
                    success=False,
                    state=CheckoutState.CANCELED,
                    payment_intent_id=payment_intent_id,
                )

            result = await self._verify(response)

        except PaymentError as e:
            logger.warning(
                "subscription_purchase_failed",
                user_id=user_id,
                plan_id=str(plan_id),
                error_type=e.type.value,
                code=e.code,
            )
            return PaymentResult(
                success=False,
                state=CheckoutState.FAILED,
                payment_intent_id=payment_intent_id,
                error=e.to_detail(),
            )
        except Exception:
            logger.exception("subscription_purchase_unexpected_error", user_id=user_id, plan_id=str(plan_id))
            return PaymentResult(
                success=False,
                state=CheckoutState.FAILED,
                payment_intent_id=payment_intent_id,
                error=PaymentNetworkError(code=ErrorCode.UNEXPECTED_ERROR).to_detail(),
            )

        # Re-read the record the backend wrote so callers see the settled state
        await self.get_user_subscription(user_id)
        logger.info(
            "subscription_purchase_finished",
            user_id=user_id,
            state=result.state.value,
            subscription_status=self.subscription.status.value if self.subscription else None,
        )
        return result

    async def _resolve_method(
        self,
        user_id: str,
        option: PaymentOption,
        payment_method_id: Optional[str],
    ) -> str:
        if option == PaymentOption.EXPRESS:
            default = await self.methods.get_default_payment_method(user_id)
            if default is None:
                raise PaymentValidationError(code=ErrorCode.NO_DEFAULT_PAYMENT_METHOD)
            return default.processor_token

        if not payment_method_id:
            raise PaymentValidationError(
                "Select a payment method to continue",
                code=ErrorCode.PAYMENT_METHOD_REQUIRED,
            )
        payment_method = await self.methods.validate_payment_method(user_id, payment_method_id)
        if payment_method is None:
            raise PaymentValidationError(code=ErrorCode.PAYMENT_METHOD_NOT_FOUND)
        return payment_method.processor_token

    async def _create(
        self,
        plan: MerchantPlan,
        option: PaymentOption,
        processor_token: Optional[str],
    ) -> SubscriptionPurchaseResponse:
        response = await self.backend.create_subscription(str(plan.id), option, processor_token)
        if not response.success:
            raise ProcessorError(response.error or "Subscription purchase failed")
        return response

    async def _confirm_if_needed(
        self,
        response: SubscriptionPurchaseResponse,
        locked: bool,
        always: bool,
    ) -> ConfirmationOutcome:
        if not (always or response.requires_action):
            return ConfirmationOutcome.COMPLETED
        if response.client_secret is None or not response.client_secret.get_secret_value():
            raise ProcessorError(
                "Missing client secret for subscription payment",
                code=ErrorCode.MISSING_CLIENT_SECRET,
            )

        config = self.presenter.payment_config(response.client_secret)
        if locked:
            return await self.presenter.confirm_locked(config, owner="subscription")
        return await self.presenter.confirm(config, owner="subscription")

    async def _verify(self, response: SubscriptionPurchaseResponse) -> PaymentResult:
        """Confirm with the backend that the plan was paid."""
        if response.payment_intent_id is None:
            # Recurring plan settled without an intent to re-read
            if response.status in ACTIVE_STATUSES:
                return PaymentResult(success=True, state=CheckoutState.SUCCEEDED, verified=True)
            return PaymentResult(success=False, state=CheckoutState.PENDING_VERIFICATION)

        intent = await self.gateway.retrieve_intent(response.payment_intent_id)
        if intent.status == IntentStatus.SUCCEEDED:
            return PaymentResult(
                success=True,
                state=CheckoutState.SUCCEEDED,
                payment_intent_id=intent.id,
                status=intent.status,
                verified=True,
            )
        if intent.status in (None, IntentStatus.PROCESSING, IntentStatus.REQUIRES_CAPTURE):
            return PaymentResult(
                success=False,
                state=CheckoutState.PENDING_VERIFICATION,
                payment_intent_id=intent.id,
                status=intent.status,
            )
        raise ProcessorError(
            f"Payment was not completed (status: {intent.status.value})",
            code=ErrorCode.PAYMENT_NOT_COMPLETED,
        )

    async def cancel(self, user_id: str) -> Subscription:
        """
        Cancel the user's recurring plan at the end of the current period.

        Raises:
            PaymentValidationError: No subscription, or one that cannot be canceled
            PaymentError: Backend failure
        """
        subscription = await self.get_user_subscription(user_id)
        if subscription is None:
            raise PaymentValidationError("No active subscription found", code=ErrorCode.SUBSCRIPTION_NOT_FOUND)
        if not self.can_cancel(subscription) or not subscription.processor_subscription_id:
            raise PaymentValidationError(
                "This subscription cannot be canceled",
                code=ErrorCode.SUBSCRIPTION_NOT_CANCELABLE,
            )
        if subscription.cancel_at_period_end:
            raise PaymentValidationError(
                "This subscription is already set to end with the current period",
                code=ErrorCode.SUBSCRIPTION_CANCEL_SCHEDULED,
            )

        await self.backend.cancel_subscription(subscription.processor_subscription_id)
        logger.info("subscription_canceled", user_id=user_id, subscription_id=str(subscription.id))

        refreshed = await self.get_user_subscription(user_id)
        return refreshed if refreshed is not None else subscription

    def has_active_subscription(self, subscription: Optional[Subscription]) -> bool:
        """Active and not past its expiry or period end."""
        if subscription is None or subscription.status != SubscriptionStatus.ACTIVE:
            return False
        now = self.clock()
        if subscription.type == SubscriptionType.ONE_TIME:
            return subscription.expires_at is None or now < subscription.expires_at
        return subscription.current_period_end is None or now < subscription.current_period_end

    def is_expired(self, subscription: Optional[Subscription]) -> bool:
        if subscription is None:
            return False
        now = self.clock()
        if subscription.type == SubscriptionType.ONE_TIME:
            return subscription.expires_at is not None and now >= subscription.expires_at
        if subscription.status == SubscriptionStatus.EXPIRED:
            return True
        return subscription.current_period_end is not None and now >= subscription.current_period_end

    def can_cancel(self, subscription: Optional[Subscription]) -> bool:
        """Only active recurring plans can be canceled."""
        if subscription is None:
            return False
        return subscription.type == SubscriptionType.RECURRING and subscription.status == SubscriptionStatus.ACTIVE

    async def watch_expiry(
        self,
        user_id: str,
        on_expired: Callable[[Subscription], None],
        interval_seconds: Optional[float] = None,
    ) -> Optional[Subscription]:
        """
        Poll the user's subscription while it is active and report when it expires.

        Returns when the subscription expires (after calling ``on_expired``)
        or stops being active. Cancel the task to stop watching early.

        Returns:
            The expired subscription, or None if watching stopped for another reason
        """
        interval = interval_seconds if interval_seconds is not None else settings.subscription_poll_interval_seconds

        while True:
            subscription = await self.get_user_subscription(user_id)
            if subscription is None:
                return None
            if self.is_expired(subscription):
                logger.info("subscription_expired", user_id=user_id, subscription_id=str(subscription.id))
                on_expired(subscription)
                return subscription
            if subscription.status != SubscriptionStatus.ACTIVE:
                return None
            await asyncio.sleep(interval)

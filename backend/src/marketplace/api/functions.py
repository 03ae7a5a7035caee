"""Backend functions called by the app under /functions/v1.

These are the only endpoints that touch the Stripe secret key. Every call is
authenticated with the user's bearer token and scoped to that user's Stripe
customer.
"""
import calendar
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.adapters.stripe_adapter import StripeAdapter
from marketplace.api.deps import get_current_user, get_db, get_stripe_adapter
from marketplace.config import settings
from marketplace.errors import PaymentValidationError, ProcessorError
from marketplace.models.subscription import (
    BillingInterval,
    MerchantPlan,
    Subscription,
    SubscriptionStatus,
    SubscriptionType,
)
from marketplace.models.transaction import TransactionType
from marketplace.schemas.backend import (
    CreatePaymentIntentRequest,
    OkResponse,
    PaymentIntentResponse,
    PaymentMethodResponse,
    PaymentMethodTokenRequest,
    RetrievePaymentIntentRequest,
    RetrieveSetupIntentRequest,
    RetrieveSetupIntentResponse,
    SetupIntentResponse,
    SubscriptionCheckoutRequest,
    SubscriptionCheckoutResponse,
)
from marketplace.schemas.error import ErrorCode
from marketplace.schemas.payment_method import ProcessorPaymentMethod
from marketplace.schemas.subscription import PaymentOption, SubscriptionPurchaseRequest
from marketplace.services.customer_service import CustomerService
from marketplace.services.payment_intent_gateway import validate_amount
from marketplace.services.transaction_service import TransactionService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/functions/v1", tags=["Functions"])

# Stripe subscription status -> local status
STRIPE_SUBSCRIPTION_STATUS = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}

# Intent statuses that need the payment sheet before the charge can land
ACTION_STATUSES = frozenset({"requires_action", "requires_payment_method", "requires_confirmation"})


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def pass_expiry(interval: BillingInterval, start: datetime) -> datetime:
    """Expiry of a one-time pass bought at ``start``."""
    if interval == BillingInterval.YEAR:
        return add_months(start, 12)
    if interval == BillingInterval.MONTH:
        return add_months(start, 1)
    return start + timedelta(hours=24)


async def _customer_id(db: AsyncSession, stripe_adapter: StripeAdapter, user: dict[str, Any]) -> str:
    return await CustomerService(db, stripe_adapter).get_or_create_customer(user["sub"], user.get("email"))


async def _owned_payment_method(
    db: AsyncSession,
    stripe_adapter: StripeAdapter,
    user: dict[str, Any],
    payment_method_id: str,
) -> tuple[str, dict[str, Any]]:
    customer_id = await _customer_id(db, stripe_adapter, user)
    details = await stripe_adapter.retrieve_payment_method(payment_method_id)
    if details.get("customer") != customer_id:
        logger.warning("payment_method_not_owned", user_id=user["sub"], payment_method_id=payment_method_id)
        raise PaymentValidationError(code=ErrorCode.PAYMENT_METHOD_NOT_FOUND)
    return customer_id, details


# Setup intents and payment methods


@router.post("/create-setup-intent", response_model=SetupIntentResponse)
async def create_setup_intent(
    db: AsyncSession = Depends(get_db),
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
    user: dict[str, Any] = Depends(get_current_user),
) -> SetupIntentResponse:
    """Create a setup intent so the payment sheet can save a card."""
    customer_id = await _customer_id(db, stripe_adapter, user)
    setup_intent = await stripe_adapter.create_setup_intent(customer_id)
    logger.info("setup_intent_created", user_id=user["sub"], setup_intent_id=setup_intent["id"])
    return SetupIntentResponse(setup_intent_id=setup_intent["id"], client_secret=setup_intent["client_secret"])


@router.post("/retrieve-setup-intent", response_model=RetrieveSetupIntentResponse)
async def retrieve_setup_intent(
    body: RetrieveSetupIntentRequest,
    db: AsyncSession = Depends(get_db),
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
    user: dict[str, Any] = Depends(get_current_user),
) -> RetrieveSetupIntentResponse:
    """Report a setup intent's status and the card it saved."""
    customer_id = await _customer_id(db, stripe_adapter, user)
    setup_intent = await stripe_adapter.retrieve_setup_intent(body.setup_intent_id)
    if setup_intent["customer"] != customer_id:
        raise PaymentValidationError("Setup intent not found", code=ErrorCode.PAYMENT_METHOD_NOT_FOUND)

    payment_method = setup_intent["payment_method"]
    return RetrieveSetupIntentResponse(
        status=setup_intent["status"],
        payment_method=ProcessorPaymentMethod.model_validate(payment_method) if payment_method else None,
    )


@router.post("/get-payment-method", response_model=PaymentMethodResponse)
async def get_payment_method(
    body: PaymentMethodTokenRequest,
    db: AsyncSession = Depends(get_db),
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
    user: dict[str, Any] = Depends(get_current_user),
) -> PaymentMethodResponse:
    _, details = await _owned_payment_method(db, stripe_adapter, user, body.payment_method_id)
    return PaymentMethodResponse(payment_method=ProcessorPaymentMethod.model_validate(details))


@router.post("/detach-payment-method", response_model=OkResponse)
async def detach_payment_method(
    body: PaymentMethodTokenRequest,
    db: AsyncSession = Depends(get_db),
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
    user: dict[str, Any] = Depends(get_current_user),
) -> OkResponse:
    """Detach a saved card so it can no longer be charged."""
    await _owned_payment_method(db, stripe_adapter, user, body.payment_method_id)
    await stripe_adapter.detach_payment_method(body.payment_method_id)
    logger.info("payment_method_detached", user_id=user["sub"], payment_method_id=body.payment_method_id)
    return OkResponse()


@router.post("/set-default-payment-method", response_model=OkResponse)
async def set_default_payment_method(
    body: PaymentMethodTokenRequest,
    db: AsyncSession = Depends(get_db),
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
    user: dict[str, Any] = Depends(get_current_user),
) -> OkResponse:
    customer_id, _ = await _owned_payment_method(db, stripe_adapter, user, body.payment_method_id)
    await stripe_adapter.set_default_payment_method(customer_id, body.payment_method_id)
    logger.info("payment_method_default_set", user_id=user["sub"], payment_method_id=body.payment_method_id)
    return OkResponse()


# Payment intents


@router.post("/create-payment-intent", response_model=PaymentIntentResponse)
async def create_payment_intent(
    body: CreatePaymentIntentRequest,
    db: AsyncSession = Depends(get_db),
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
    user: dict[str, Any] = Depends(get_current_user),
) -> PaymentIntentResponse:
    """
    Create a payment intent and its pending transaction record.

    With ``paymentMethodId`` the saved card is charged right away; without it
    the intent waits for the payment sheet.
    """
    validate_amount(body.amount)
    customer_id = await _customer_id(db, stripe_adapter, user)
    currency = body.currency or settings.currency

    metadata = {**body.metadata, "user_id": user["sub"]}
    if body.seller_id:
        metadata["seller_id"] = body.seller_id

    intent = await stripe_adapter.create_payment_intent(
        amount=body.amount,
        currency=currency,
        customer_id=customer_id,
        payment_method_id=body.payment_method_id,
        idempotency_key=body.idempotency_key,
        description=body.description,
        metadata=metadata,
    )

    transactions = TransactionService(db)
    await transactions.record_pending(
        buyer_id=user["sub"],
        payment_intent_id=intent["id"],
        amount=body.amount,
        currency=currency,
        seller_id=body.seller_id,
        description=body.description,
        transaction_type=TransactionType.SUBSCRIPTION if "plan_id" in body.metadata else TransactionType.PAYMENT,
    )
    await transactions.settle(intent["id"], intent["status"])

    logger.info(
        "payment_intent_created",
        user_id=user["sub"],
        payment_intent_id=intent["id"],
        amount=body.amount,
        status=intent["status"],
    )
    return PaymentIntentResponse(
        payment_intent_id=intent["id"],
        client_secret=intent["client_secret"],
        status=intent["status"],
        amount=intent["amount"],
        currency=intent["currency"],
    )


@router.post("/retrieve-payment-intent", response_model=PaymentIntentResponse)
async def retrieve_payment_intent(
    body: RetrievePaymentIntentRequest,
    db: AsyncSession = Depends(get_db),
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
    user: dict[str, Any] = Depends(get_current_user),
) -> PaymentIntentResponse:
    """
    Report the processor's current view of an intent.

    The transaction record is settled from the same answer, so a client
    verifying its payment never has to wait for the webhook.
    """
    customer_id = await _customer_id(db, stripe_adapter, user)
    intent = await stripe_adapter.retrieve_payment_intent(body.payment_intent_id)
    if intent["customer"] != customer_id:
        raise PaymentValidationError(code=ErrorCode.PAYMENT_INTENT_NOT_FOUND)

    await TransactionService(db).settle(intent["id"], intent["status"])

    return PaymentIntentResponse(
        payment_intent_id=intent["id"],
        status=intent["status"],
        amount=intent["amount"],
        currency=intent["currency"],
    )


# Merchant plans


@router.post("/subscription-checkout", response_model=SubscriptionCheckoutResponse | OkResponse)
async def subscription_checkout(
    body: SubscriptionCheckoutRequest,
    db: AsyncSession = Depends(get_db),
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
    user: dict[str, Any] = Depends(get_current_user),
) -> SubscriptionCheckoutResponse | OkResponse:
    """Dispatch a plan purchase or cancellation."""
    if body.action == "create_subscription":
        request = SubscriptionPurchaseRequest.model_validate(body.subscription_data or {})
        return await _create_subscription(db, stripe_adapter, user, request)
    if body.action == "cancel_subscription":
        if not body.subscription_id:
            raise PaymentValidationError("subscriptionId is required", code=ErrorCode.SUBSCRIPTION_NOT_FOUND)
        await _cancel_subscription(db, stripe_adapter, user, body.subscription_id)
        return OkResponse()
    raise PaymentValidationError(f"Invalid action: {body.action}")


async def _create_subscription(
    db: AsyncSession,
    stripe_adapter: StripeAdapter,
    user: dict[str, Any],
    request: SubscriptionPurchaseRequest,
) -> SubscriptionCheckoutResponse:
    user_id = user["sub"]

    try:
        plan_result = await db.execute(select(MerchantPlan).where(MerchantPlan.id == UUID(request.plan_id)))
        plan: Optional[MerchantPlan] = plan_result.scalar_one_or_none()
    except ValueError:
        plan = None
    if plan is None or not plan.is_active:
        raise PaymentValidationError(f"Plan {request.plan_id} not found", code=ErrorCode.PLAN_NOT_FOUND)

    now = datetime.utcnow()
    active_result = await db.execute(
        select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
    )
    for existing in active_result.scalars().all():
        if existing.expires_at is None or existing.expires_at > now:
            raise PaymentValidationError(
                "User already has an active subscription",
                code=ErrorCode.SUBSCRIPTION_ALREADY_ACTIVE,
            )

    if request.payment_option != PaymentOption.ONE_TIME and not request.payment_method_id:
        raise PaymentValidationError(code=ErrorCode.PAYMENT_METHOD_REQUIRED)

    customer_id = await _customer_id(db, stripe_adapter, user)
    metadata = {"user_id": user_id, "plan_id": str(plan.id), "plan_name": plan.name}

    # One-time passes, and anything bought through the sheet, are a single charge
    if request.payment_option == PaymentOption.ONE_TIME or plan.billing_interval == BillingInterval.ONE_TIME:
        # The explicit option wins: a one-time purchase never charges a saved card
        payment_method_id = None if request.payment_option == PaymentOption.ONE_TIME else request.payment_method_id
        return await _create_plan_pass(db, stripe_adapter, user_id, plan, customer_id, payment_method_id, metadata)

    if not plan.processor_price_id:
        raise ProcessorError(f"Plan {plan.name} has no Stripe price", code=ErrorCode.PROCESSOR_ERROR)

    stripe_subscription = await stripe_adapter.create_subscription(
        customer_id=customer_id,
        price_id=plan.processor_price_id,
        payment_method_id=request.payment_method_id,
        save_default_payment_method=request.payment_option == PaymentOption.EXPRESS,
        metadata=metadata,
    )

    subscription = Subscription(
        user_id=user_id,
        plan_id=str(plan.id),
        status=STRIPE_SUBSCRIPTION_STATUS.get(stripe_subscription["status"], SubscriptionStatus.PENDING),
        type=SubscriptionType.RECURRING,
        current_period_start=stripe_subscription["current_period_start"] or now,
        current_period_end=stripe_subscription["current_period_end"],
        processor_subscription_id=stripe_subscription["id"],
        payment_intent_id=stripe_subscription["payment_intent_id"],
    )
    db.add(subscription)
    await db.flush()

    if stripe_subscription["payment_intent_id"]:
        await TransactionService(db).record_pending(
            buyer_id=user_id,
            payment_intent_id=stripe_subscription["payment_intent_id"],
            amount=plan.price_amount,
            currency=plan.price_currency,
            description=f"{plan.name} subscription",
            transaction_type=TransactionType.SUBSCRIPTION,
        )

    requires_action = stripe_subscription["payment_intent_status"] == "requires_action"
    logger.info(
        "subscription_created",
        user_id=user_id,
        plan_id=str(plan.id),
        subscription_id=stripe_subscription["id"],
        status=stripe_subscription["status"],
        requires_action=requires_action,
    )
    return SubscriptionCheckoutResponse(
        success=True,
        requires_action=requires_action,
        client_secret=stripe_subscription["client_secret"] if requires_action else None,
        payment_intent_id=stripe_subscription["payment_intent_id"],
        subscription_id=stripe_subscription["id"],
        status=stripe_subscription["status"],
    )


async def _create_plan_pass(
    db: AsyncSession,
    stripe_adapter: StripeAdapter,
    user_id: str,
    plan: MerchantPlan,
    customer_id: str,
    payment_method_id: Optional[str],
    metadata: dict[str, str],
) -> SubscriptionCheckoutResponse:
    intent = await stripe_adapter.create_payment_intent(
        amount=plan.price_amount,
        currency=plan.price_currency,
        customer_id=customer_id,
        payment_method_id=payment_method_id,
        description=f"{plan.name} subscription",
        metadata={**metadata, "type": "one_time_merchant_access"},
    )

    now = datetime.utcnow()
    db.add(
        Subscription(
            user_id=user_id,
            plan_id=str(plan.id),
            status=SubscriptionStatus.ACTIVE if intent["status"] == "succeeded" else SubscriptionStatus.PENDING,
            type=SubscriptionType.ONE_TIME,
            current_period_start=now,
            expires_at=pass_expiry(plan.billing_interval, now),
            payment_intent_id=intent["id"],
        )
    )
    await db.flush()

    await TransactionService(db).record_pending(
        buyer_id=user_id,
        payment_intent_id=intent["id"],
        amount=plan.price_amount,
        currency=plan.price_currency,
        description=f"{plan.name} subscription",
        transaction_type=TransactionType.SUBSCRIPTION,
    )

    requires_action = intent["status"] in ACTION_STATUSES
    logger.info(
        "plan_pass_created",
        user_id=user_id,
        plan_id=str(plan.id),
        payment_intent_id=intent["id"],
        status=intent["status"],
    )
    return SubscriptionCheckoutResponse(
        success=True,
        requires_action=requires_action,
        client_secret=intent["client_secret"] if requires_action else None,
        payment_intent_id=intent["id"],
        status=intent["status"],
    )


async def _cancel_subscription(
    db: AsyncSession,
    stripe_adapter: StripeAdapter,
    user: dict[str, Any],
    processor_subscription_id: str,
) -> None:
    result = await db.execute(
        select(Subscription).where(
            Subscription.user_id == user["sub"],
            Subscription.processor_subscription_id == processor_subscription_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise PaymentValidationError("No active subscription found", code=ErrorCode.SUBSCRIPTION_NOT_FOUND)

    canceled = await stripe_adapter.cancel_subscription(processor_subscription_id)
    subscription.cancel_at_period_end = True
    if canceled["current_period_end"]:
        subscription.current_period_end = canceled["current_period_end"]
    await db.flush()

    logger.info("subscription_cancel_scheduled", user_id=user["sub"], subscription_id=processor_subscription_id)


"""Stripe webhook handler for payment and subscription events."""
from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.adapters.stripe_adapter import StripeAdapter
from marketplace.api.deps import get_db, get_stripe_adapter
from marketplace.api.functions import STRIPE_SUBSCRIPTION_STATUS
from marketplace.models.subscription import Subscription, SubscriptionStatus
from marketplace.services.transaction_service import TransactionService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks/stripe", tags=["webhooks"])

# Webhook event -> intent status handed to settlement
PAYMENT_INTENT_EVENTS = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "canceled",
}


@router.post("")
async def handle_stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
):
    """
    Handle incoming Stripe webhook events.

    Verifies the webhook signature and processes:
    - payment_intent.succeeded / payment_failed / canceled: settle the transaction
    - customer.subscription.updated / deleted: mirror the subscription status

    Args:
        request: FastAPI request with webhook payload
        db: Database session
        stripe_adapter: Stripe adapter for webhook verification

    Returns:
        Success response

    Raises:
        HTTPException: If the signature is missing or invalid
    """
    body = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        logger.error("stripe_webhook_missing_signature")
        raise HTTPException(status_code=400, detail="Missing Stripe signature")

    try:
        event = await stripe_adapter.construct_webhook_event(body, signature)
    except ValueError as e:
        logger.error("stripe_webhook_verification_failed", error=str(e))
        raise HTTPException(status_code=400, detail=f"Webhook verification failed: {e}")

    event_type = event["type"]
    event_data = event["data"]["object"]

    logger.info(
        "stripe_webhook_received",
        event_type=event_type,
        event_id=event.get("id"),
        object_id=event_data.get("id"),
    )

    if event_type in PAYMENT_INTENT_EVENTS:
        await TransactionService(db).settle(event_data["id"], PAYMENT_INTENT_EVENTS[event_type])
    elif event_type == "customer.subscription.updated":
        await _handle_subscription_updated(db, event_data)
    elif event_type == "customer.subscription.deleted":
        await _handle_subscription_deleted(db, event_data)
    else:
        logger.info("stripe_webhook_unhandled_event", event_type=event_type)

    return {"status": "success", "event_type": event_type}


async def _find_subscription(db: AsyncSession, processor_subscription_id: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription).where(Subscription.processor_subscription_id == processor_subscription_id)
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        logger.warning("stripe_webhook_subscription_not_found", subscription_id=processor_subscription_id)
    return subscription


async def _handle_subscription_updated(db: AsyncSession, data: dict[str, Any]) -> None:
    """Mirror status, cancellation flag and period end of a recurring subscription."""
    subscription = await _find_subscription(db, data["id"])
    if subscription is None:
        return

    status = STRIPE_SUBSCRIPTION_STATUS.get(data.get("status"))
    if status is not None:
        subscription.status = status
    subscription.cancel_at_period_end = bool(data.get("cancel_at_period_end"))

    period_end = data.get("current_period_end")
    if period_end:
        subscription.current_period_end = datetime.utcfromtimestamp(period_end)

    await db.flush()
    logger.info(
        "stripe_webhook_subscription_updated",
        subscription_id=data["id"],
        status=subscription.status.value,
    )


async def _handle_subscription_deleted(db: AsyncSession, data: dict[str, Any]) -> None:
    subscription = await _find_subscription(db, data["id"])
    if subscription is None:
        return

    subscription.status = SubscriptionStatus.CANCELED
    await db.flush()
    logger.info("stripe_webhook_subscription_canceled", subscription_id=data["id"])

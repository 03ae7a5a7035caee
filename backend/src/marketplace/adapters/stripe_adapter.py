"""Stripe payment processor adapter. Used by the backend only."""
from datetime import datetime
import stripe
from typing import Any

from marketplace.config import settings


def _card_details(payment_method: Any) -> dict[str, Any]:
    card = payment_method.card if getattr(payment_method, "card", None) else None
    return {
        "id": payment_method.id,
        "type": payment_method.type,
        "brand": card.brand if card else None,
        "last4": card.last4 if card else None,
        "exp_month": card.exp_month if card else None,
        "exp_year": card.exp_year if card else None,
    }


def _timestamp(value: int | None) -> datetime | None:
    return datetime.utcfromtimestamp(value) if value else None


class StripeAdapter:
    """Adapter for Stripe payment gateway integration."""

    def __init__(self):
        """Initialize Stripe adapter with API key."""
        stripe.api_key = settings.stripe_secret_key

    async def create_customer(self, email: str | None, metadata: dict[str, Any] | None = None) -> str:
        """
        Create a Stripe customer.

        Args:
            email: Customer email
            metadata: Additional metadata (user_id)

        Returns:
            Stripe customer ID
        """
        customer = stripe.Customer.create(
            email=email,
            metadata=metadata or {},
        )
        return customer.id

    async def create_setup_intent(self, customer_id: str) -> dict[str, Any]:
        """
        Create a setup intent for saving a card for later charges.

        Args:
            customer_id: Stripe customer ID

        Returns:
            Setup intent ID and client secret
        """
        setup_intent = stripe.SetupIntent.create(
            customer=customer_id,
            payment_method_types=["card"],
            usage="off_session",
        )
        return {"id": setup_intent.id, "client_secret": setup_intent.client_secret}

    async def retrieve_setup_intent(self, setup_intent_id: str) -> dict[str, Any]:
        """
        Retrieve a setup intent with its confirmed payment method.

        Returns:
            Status and card details (None until the intent succeeded)
        """
        setup_intent = stripe.SetupIntent.retrieve(setup_intent_id, expand=["payment_method"])
        payment_method = setup_intent.payment_method
        return {
            "id": setup_intent.id,
            "status": setup_intent.status,
            "customer": setup_intent.customer,
            "payment_method": _card_details(payment_method) if payment_method else None,
        }

    async def retrieve_payment_method(self, payment_method_id: str) -> dict[str, Any]:
        """
        Retrieve display details of a payment method.

        Returns:
            Card details plus the owning customer
        """
        payment_method = stripe.PaymentMethod.retrieve(payment_method_id)
        details = _card_details(payment_method)
        details["customer"] = payment_method.customer
        return details

    async def detach_payment_method(self, payment_method_id: str) -> None:
        """
        Detach payment method from customer.

        Args:
            payment_method_id: Stripe payment method ID
        """
        stripe.PaymentMethod.detach(payment_method_id)

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        """Make a payment method the customer's default for invoices and subscriptions."""
        stripe.Customer.modify(
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        customer_id: str,
        payment_method_id: str | None = None,
        idempotency_key: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Create a payment intent.

        With a saved payment method the intent is confirmed immediately and
        may come back ``requires_action`` for 3-D Secure. Without one the
        intent waits for the payment sheet to collect a card.

        Args:
            amount: Amount in cents
            currency: ISO currency code
            customer_id: Stripe customer ID
            payment_method_id: Stripe payment method ID (optional)
            idempotency_key: Idempotency key for retries
            description: Statement description
            metadata: Additional metadata

        Returns:
            Payment intent details

        Raises:
            stripe.CardError: Card was declined
            stripe.StripeError: Other Stripe failure
        """
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "customer": customer_id,
            "payment_method_types": ["card"],
            "metadata": metadata or {},
        }

        if description:
            params["description"] = description

        if payment_method_id:
            params["payment_method"] = payment_method_id
            params["confirm"] = True

        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        payment_intent = stripe.PaymentIntent.create(**params)

        return {
            "id": payment_intent.id,
            "status": payment_intent.status,
            "amount": payment_intent.amount,
            "currency": payment_intent.currency,
            "client_secret": payment_intent.client_secret,
            "metadata": dict(payment_intent.metadata or {}),
        }

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        """
        Retrieve payment intent status.

        Args:
            payment_intent_id: Stripe payment intent ID

        Returns:
            Payment intent details
        """
        payment_intent = stripe.PaymentIntent.retrieve(payment_intent_id)

        return {
            "id": payment_intent.id,
            "status": payment_intent.status,
            "amount": payment_intent.amount,
            "currency": payment_intent.currency,
            "customer": payment_intent.customer,
        }

    async def cancel_payment_intent(self, payment_intent_id: str) -> None:
        stripe.PaymentIntent.cancel(payment_intent_id)

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method_id: str | None = None,
        save_default_payment_method: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Create a recurring Stripe subscription.

        Args:
            customer_id: Stripe customer ID
            price_id: Stripe price ID of the plan
            payment_method_id: Saved payment method to charge
            save_default_payment_method: Keep the method as the subscription default
            metadata: Additional metadata

        Returns:
            Subscription details with the first invoice's payment intent
        """
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_settings": {
                "save_default_payment_method": "on_subscription" if save_default_payment_method else "off",
            },
            "expand": ["latest_invoice.payment_intent"],
            "metadata": metadata or {},
        }
        if payment_method_id:
            params["default_payment_method"] = payment_method_id
            params["payment_behavior"] = "allow_incomplete"
        else:
            params["payment_behavior"] = "default_incomplete"

        subscription = stripe.Subscription.create(**params)

        payment_intent = None
        if subscription.latest_invoice and subscription.latest_invoice.payment_intent:
            payment_intent = subscription.latest_invoice.payment_intent

        return {
            "id": subscription.id,
            "status": subscription.status,
            "current_period_start": _timestamp(subscription.current_period_start),
            "current_period_end": _timestamp(subscription.current_period_end),
            "payment_intent_id": payment_intent.id if payment_intent else None,
            "payment_intent_status": payment_intent.status if payment_intent else None,
            "client_secret": payment_intent.client_secret if payment_intent else None,
        }

    async def cancel_subscription(self, subscription_id: str) -> dict[str, Any]:
        """
        Cancel a subscription at the end of its current period.

        Returns:
            Subscription status and period end
        """
        subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        return {
            "id": subscription.id,
            "status": subscription.status,
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "current_period_end": _timestamp(subscription.current_period_end),
        }

    async def construct_webhook_event(self, payload: bytes, signature: str) -> Any:
        """
        Construct and verify webhook event.

        Args:
            payload: Webhook payload
            signature: Webhook signature

        Returns:
            Stripe event object

        Raises:
            ValueError: If signature verification fails
        """
        try:
            event = stripe.Webhook.construct_event(
                payload, signature, settings.stripe_webhook_secret
            )
            return event
        except ValueError as e:
            raise ValueError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise ValueError(f"Invalid signature: {e}") from e

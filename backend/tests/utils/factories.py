"""Test data factories using Faker for generating realistic test data."""
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from faker import Faker

fake = Faker()


class CartItemFactory:
    """Factory for creating cart line data."""

    @staticmethod
    def create(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Create cart line test data, shaped like ``CartItemData``.

        Args:
            overrides: Optional field overrides

        Returns:
            dict: Cart line data
        """
        data = {
            "id": uuid4(),
            "product_id": f"prod_{fake.random_letters(length=10)}",
            "seller_id": f"seller_{fake.random_int(min=1, max=999)}",
            "quantity": fake.random_int(min=1, max=3),
            "unit_price": fake.random_int(min=100, max=10000),
            "product_snapshot": {
                "title": fake.catch_phrase(),
                "merchant_name": fake.company(),
                "condition": fake.random_element(["new", "like_new", "used"]),
            },
        }
        if overrides:
            data.update(overrides)
        return data


class AddToCartFactory:
    """Factory for add-to-cart input."""

    @staticmethod
    def create(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        data = {
            "product_id": f"prod_{fake.random_letters(length=10)}",
            "seller_id": f"seller_{fake.random_int(min=1, max=999)}",
            "title": fake.catch_phrase(),
            "unit_price": fake.random_int(min=100, max=10000),
            "quantity": 1,
            "merchant_name": fake.company(),
            "condition": "new",
        }
        if overrides:
            data.update(overrides)
        return data


class CardFactory:
    """Factory for processor card details (``ProcessorPaymentMethod``)."""

    @staticmethod
    def create(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Create processor card test data.

        Args:
            overrides: Optional field overrides

        Returns:
            dict: Card data
        """
        data = {
            "id": f"pm_{fake.random_letters(length=24)}",
            "type": "card",
            "brand": fake.random_element(["visa", "mastercard", "amex"]),
            "last4": fake.numerify("####"),
            "exp_month": fake.random_int(min=1, max=12),
            "exp_year": datetime.utcnow().year + fake.random_int(min=1, max=5),
        }
        if overrides:
            data.update(overrides)
        return data


class PaymentMethodFactory:
    """Factory for saved payment method rows."""

    @staticmethod
    def create(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        card = CardFactory.create()
        data = {
            "user_id": fake.uuid4(),
            "processor_token": card["id"],
            "type": "card",
            "brand": card["brand"],
            "last4": card["last4"],
            "exp_month": card["exp_month"],
            "exp_year": card["exp_year"],
            "is_default": False,
        }
        if overrides:
            data.update(overrides)
        return data


class PlanFactory:
    """Factory for merchant plan rows."""

    @staticmethod
    def create(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Create merchant plan test data.

        Args:
            overrides: Optional field overrides

        Returns:
            dict: Plan data
        """
        data = {
            "name": f"{fake.word().title()} Plan",
            "description": fake.sentence(),
            "price_amount": fake.random_int(min=500, max=10000),
            "price_currency": "usd",
            "processor_price_id": f"price_{fake.random_letters(length=14)}",
            "is_active": True,
        }
        if overrides:
            data.update(overrides)
        return data


class SubscriptionFactory:
    """Factory for subscription rows."""

    @staticmethod
    def create(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        start_date = datetime.utcnow()
        data = {
            "user_id": fake.uuid4(),
            "plan_id": str(uuid4()),
            "current_period_start": start_date,
            "current_period_end": start_date + timedelta(days=30),
            "expires_at": None,
            "processor_subscription_id": f"sub_{fake.random_letters(length=14)}",
            "cancel_at_period_end": False,
        }
        if overrides:
            data.update(overrides)
        return data


class TransactionFactory:
    """Factory for transaction rows."""

    @staticmethod
    def create(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        data = {
            "buyer_id": fake.uuid4(),
            "seller_id": f"seller_{fake.random_int(min=1, max=999)}",
            "payment_intent_id": f"pi_{fake.random_letters(length=24)}",
            "amount": fake.random_int(min=100, max=10000),
            "currency": "usd",
            "description": fake.sentence(),
        }
        if overrides:
            data.update(overrides)
        return data

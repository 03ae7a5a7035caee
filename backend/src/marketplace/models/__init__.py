"""SQLAlchemy ORM models for the marketplace checkout."""
# Import all models here so they are registered on the metadata

from marketplace.models.base import Base
from marketplace.models.payment_method import PaymentMethod
from marketplace.models.transaction import Transaction, TransactionStatus, TransactionType
from marketplace.models.cart import CartItem
from marketplace.models.order import Order, OrderItem, OrderStatus
from marketplace.models.subscription import (
    BillingInterval,
    MerchantPlan,
    Subscription,
    SubscriptionStatus,
    SubscriptionType,
)
from marketplace.models.customer import StripeCustomer

__all__ = [
    "Base",
    "PaymentMethod",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "CartItem",
    "Order",
    "OrderItem",
    "OrderStatus",
    "BillingInterval",
    "MerchantPlan",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionType",
    "StripeCustomer",
]

"""Pydantic schemas for orders."""
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from marketplace.models.order import OrderStatus
from marketplace.schemas.cart import ProductSnapshot


class OrderItemRead(BaseModel):
    """Order line as returned to callers."""

    id: UUID
    product_id: str
    seller_id: str | None
    quantity: int
    unit_price: int
    total_price: int
    product_snapshot: ProductSnapshot

    model_config = ConfigDict(from_attributes=True)


class OrderRead(BaseModel):
    """Order with its items."""

    id: UUID
    buyer_id: str
    seller_id: str | None
    order_number: str
    status: OrderStatus
    subtotal: int
    tax_amount: int
    shipping_amount: int
    total_amount: int
    currency: str
    payment_intent_id: str | None
    items: list[OrderItemRead]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

"""Pydantic schemas for cart lines and computed cart summaries."""
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

UNKNOWN_SELLER_ID = "unknown"
UNKNOWN_MERCHANT_NAME = "Unknown merchant"


class ProductSnapshot(BaseModel):
    """Product details frozen at add-to-cart time."""

    title: str
    merchant_name: str = UNKNOWN_MERCHANT_NAME
    condition: str | None = None
    description: str | None = None
    image_url: str | None = None


class CartItemData(BaseModel):
    """A cart line as consumed by the aggregator and the order recorder."""

    id: UUID | None = None
    product_id: str
    seller_id: str | None = None
    quantity: int = Field(..., gt=0)
    unit_price: int = Field(..., ge=0, description="Unit price in cents")
    product_snapshot: ProductSnapshot

    model_config = ConfigDict(from_attributes=True)

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class AddToCartData(BaseModel):
    """Input for adding a product to the cart."""

    product_id: str = Field(..., min_length=1)
    seller_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    unit_price: int = Field(..., description="Unit price in cents")
    quantity: int = Field(default=1)
    merchant_name: str = UNKNOWN_MERCHANT_NAME
    condition: str | None = None
    description: str | None = None
    image_url: str | None = None


class MerchantGroup(BaseModel):
    """Cart lines for one seller, with that seller's share of tax and shipping."""

    seller_id: str
    merchant_name: str
    items: list[CartItemData]
    subtotal: int
    item_count: int
    tax: int = 0
    shipping: int = 0
    total: int = 0


class CartSummary(BaseModel):
    """Totals for a cart. All amounts are integer cents."""

    subtotal: int
    tax: int
    shipping: int
    total: int
    item_count: int
    currency: str = "usd"
    merchant_groups: list[MerchantGroup] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.item_count == 0

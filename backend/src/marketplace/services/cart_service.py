"""Cart persistence and the cart aggregator.

``compute_summary`` is a pure function over cart lines; ``CartService`` is the
database-backed cart that feeds it.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Sequence
from uuid import UUID

import structlog
from pydantic import BaseModel
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.errors import PaymentValidationError
from marketplace.models.cart import CartItem
from marketplace.schemas.cart import (
    UNKNOWN_MERCHANT_NAME,
    UNKNOWN_SELLER_ID,
    AddToCartData,
    CartItemData,
    CartSummary,
    MerchantGroup,
    ProductSnapshot,
)
from marketplace.schemas.error import ErrorCode

logger = structlog.get_logger(__name__)


class PricingPolicy(BaseModel):
    """Fixed tax and shipping constants applied to every cart."""

    tax_rate: Decimal
    shipping_base_fee: int
    shipping_additional_item_fee: int
    currency: str = "usd"

    @classmethod
    def from_settings(cls) -> "PricingPolicy":
        return cls(
            tax_rate=settings.tax_rate,
            shipping_base_fee=settings.shipping_base_fee,
            shipping_additional_item_fee=settings.shipping_additional_item_fee,
            currency=settings.currency,
        )

    def tax_for(self, subtotal: int) -> int:
        """Tax in cents, rounded half-up to the nearest cent."""
        return int((Decimal(subtotal) * self.tax_rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def shipping_for(self, item_count: int) -> int:
        """Base fee for the first item plus a flat fee per additional item. Nothing ships for free."""
        if item_count <= 0:
            return 0
        return self.shipping_base_fee + self.shipping_additional_item_fee * max(0, item_count - 1)


def _allocate(amount: int, weights: Sequence[int]) -> list[int]:
    """
    Split ``amount`` proportionally to ``weights``.

    Shares are floored and the last share takes the remainder, so the parts
    always add back up to ``amount``.
    """
    total_weight = sum(weights)
    if not weights:
        return []
    if total_weight == 0:
        return [0] * (len(weights) - 1) + [amount]

    shares = [amount * weight // total_weight for weight in weights[:-1]]
    shares.append(amount - sum(shares))
    return shares


def group_by_merchant(items: Iterable[CartItemData]) -> list[MerchantGroup]:
    """
    Group cart lines by seller, keeping first-seen order.

    Lines without a seller land in a single ``"unknown"`` group instead of
    failing, so a partially loaded cart still renders.
    """
    groups: dict[str, MerchantGroup] = {}
    for item in items:
        seller_id = item.seller_id or UNKNOWN_SELLER_ID
        group = groups.get(seller_id)
        if group is None:
            merchant_name = (
                UNKNOWN_MERCHANT_NAME
                if seller_id == UNKNOWN_SELLER_ID
                else item.product_snapshot.merchant_name or UNKNOWN_MERCHANT_NAME
            )
            group = MerchantGroup(
                seller_id=seller_id,
                merchant_name=merchant_name,
                items=[],
                subtotal=0,
                item_count=0,
            )
            groups[seller_id] = group

        group.items.append(item)
        group.subtotal += item.line_total
        group.item_count += item.quantity

    return list(groups.values())


def compute_summary(items: Iterable[CartItemData], policy: PricingPolicy | None = None) -> CartSummary:
    """
    Compute cart totals.

    ``total == subtotal + tax + shipping`` always holds, and the per-merchant
    group totals add up to the cart totals exactly.

    Args:
        items: Cart lines
        policy: Pricing constants (defaults to settings)

    Returns:
        Cart summary with merchant groups
    """
    policy = policy or PricingPolicy.from_settings()
    groups = group_by_merchant(items)

    subtotal = sum(group.subtotal for group in groups)
    item_count = sum(group.item_count for group in groups)
    tax = policy.tax_for(subtotal)
    shipping = policy.shipping_for(item_count)

    # Tax follows what each merchant sells, shipping follows what each merchant ships
    tax_shares = _allocate(tax, [group.subtotal for group in groups])
    shipping_shares = _allocate(shipping, [group.item_count for group in groups])

    for group, group_tax, group_shipping in zip(groups, tax_shares, shipping_shares):
        group.tax = group_tax
        group.shipping = group_shipping
        group.total = group.subtotal + group_tax + group_shipping

    return CartSummary(
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        total=subtotal + tax + shipping,
        item_count=item_count,
        currency=policy.currency,
        merchant_groups=groups,
    )


class CartService:
    """Service layer for a user's persisted cart."""

    def __init__(self, db: AsyncSession, policy: PricingPolicy | None = None):
        """Initialize cart service."""
        self.db = db
        self.policy = policy

    async def list_items(self, user_id: str) -> list[CartItem]:
        """List a user's cart lines in the order they were added."""
        result = await self.db.execute(
            select(CartItem).where(CartItem.user_id == user_id).order_by(CartItem.added_at.asc())
        )
        return list(result.scalars().all())

    async def get_item(self, user_id: str, item_id: UUID) -> CartItem | None:
        result = await self.db.execute(
            select(CartItem).where(CartItem.id == item_id, CartItem.user_id == user_id)
        )
        return result.scalar_one_or_none()

    def _check_quantity(self, quantity: int) -> None:
        if quantity < 1 or quantity > settings.max_quantity_per_item:
            raise PaymentValidationError(
                f"Quantity must be between 1 and {settings.max_quantity_per_item}",
                code=ErrorCode.INVALID_QUANTITY,
            )

    async def add_item(self, user_id: str, data: AddToCartData) -> CartItem:
        """
        Add a product to the cart.

        Adding a product that is already in the cart increases the quantity of
        the existing line.

        Args:
            user_id: Cart owner
            data: Product and quantity to add

        Returns:
            The new or updated cart line

        Raises:
            PaymentValidationError: Invalid price or quantity, or the cart is full
        """
        if data.unit_price < 0:
            raise PaymentValidationError("Price must not be negative", code=ErrorCode.INVALID_CART_ITEM)
        self._check_quantity(data.quantity)

        result = await self.db.execute(
            select(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == data.product_id)
        )
        existing = result.scalar_one_or_none()

        if existing is not None:
            new_quantity = existing.quantity + data.quantity
            self._check_quantity(new_quantity)
            existing.quantity = new_quantity
            await self.db.flush()
            logger.info("cart_item_merged", user_id=user_id, product_id=data.product_id, quantity=new_quantity)
            return existing

        count_result = await self.db.execute(
            select(func.count()).select_from(CartItem).where(CartItem.user_id == user_id)
        )
        if count_result.scalar_one() >= settings.cart_item_limit:
            raise PaymentValidationError(
                f"Cart cannot hold more than {settings.cart_item_limit} items",
                code=ErrorCode.CART_LIMIT_EXCEEDED,
            )

        snapshot = ProductSnapshot(
            title=data.title,
            merchant_name=data.merchant_name,
            condition=data.condition,
            description=data.description,
            image_url=data.image_url,
        )
        item = CartItem(
            user_id=user_id,
            product_id=data.product_id,
            seller_id=data.seller_id,
            quantity=data.quantity,
            unit_price=data.unit_price,
            product_snapshot=snapshot.model_dump(),
        )
        self.db.add(item)
        await self.db.flush()
        await self.db.refresh(item)

        logger.info("cart_item_added", user_id=user_id, product_id=data.product_id, quantity=data.quantity)
        return item

    async def update_quantity(self, user_id: str, item_id: UUID, quantity: int) -> CartItem | None:
        """
        Set the quantity of a cart line. A quantity of zero removes the line.

        Returns:
            Updated line, or None when it was removed
        """
        item = await self.get_item(user_id, item_id)
        if item is None:
            raise PaymentValidationError(f"Cart item {item_id} not found", code=ErrorCode.CART_ITEM_NOT_FOUND)

        if quantity == 0:
            await self.db.delete(item)
            await self.db.flush()
            logger.info("cart_item_removed", user_id=user_id, item_id=str(item_id))
            return None

        self._check_quantity(quantity)
        item.quantity = quantity
        await self.db.flush()
        return item

    async def remove_item(self, user_id: str, item_id: UUID) -> None:
        item = await self.get_item(user_id, item_id)
        if item is None:
            raise PaymentValidationError(f"Cart item {item_id} not found", code=ErrorCode.CART_ITEM_NOT_FOUND)
        await self.db.delete(item)
        await self.db.flush()
        logger.info("cart_item_removed", user_id=user_id, item_id=str(item_id))

    async def remove_items(self, user_id: str, item_ids: Iterable[UUID]) -> int:
        """Remove several lines at once, e.g. the lines of one paid merchant group."""
        ids = [item_id for item_id in item_ids if item_id is not None]
        if not ids:
            return 0
        result = await self.db.execute(
            delete(CartItem)
            .where(CartItem.user_id == user_id, CartItem.id.in_(ids))
            .execution_options(synchronize_session="fetch")
        )
        await self.db.flush()
        logger.info("cart_items_removed", user_id=user_id, count=result.rowcount)
        return result.rowcount

    async def clear(self, user_id: str) -> int:
        result = await self.db.execute(
            delete(CartItem)
            .where(CartItem.user_id == user_id)
            .execution_options(synchronize_session="fetch")
        )
        await self.db.flush()
        logger.info("cart_cleared", user_id=user_id, count=result.rowcount)
        return result.rowcount

    async def get_item_data(self, user_id: str) -> list[CartItemData]:
        return [CartItemData.model_validate(item) for item in await self.list_items(user_id)]

    async def get_summary(self, user_id: str) -> CartSummary:
        """Compute the summary of the user's current cart."""
        return compute_summary(await self.get_item_data(user_id), self.policy)

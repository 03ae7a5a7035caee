"""Order service for recording paid checkouts."""
import secrets
import string
import time
from typing import Optional, List
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.errors import PaymentError, PaymentValidationError
from marketplace.models.order import Order, OrderItem, OrderStatus
from marketplace.schemas.cart import CartItemData, CartSummary, MerchantGroup
from marketplace.schemas.error import ErrorCode

logger = structlog.get_logger(__name__)

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits

# Allowed forward moves; a finished order never changes again
ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.COMPLETED, OrderStatus.FAILED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.FAILED: set(),
}


def generate_order_number() -> str:
    """
    Generate a unique, human-readable order number.

    Format: ORD-{epoch milliseconds}-{6 random characters} (e.g., ORD-1763712000000-7QK2ZP)
    """
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


class OrderService:
    """Service layer for order operations."""

    def __init__(self, db: AsyncSession):
        """Initialize order service with database session."""
        self.db = db

    async def create_order(
        self,
        buyer_id: str,
        source: MerchantGroup | CartSummary,
        payment_intent_id: Optional[str] = None,
        status: OrderStatus = OrderStatus.PENDING,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Record an order for one merchant group or a whole cart.

        Totals are copied from the aggregator output, never recomputed, so the
        order always matches what was charged. The order and its items are
        written inside a savepoint: either both are stored or neither is.

        Args:
            buyer_id: Paying user
            source: Merchant group (one order per seller) or full cart summary
            payment_intent_id: Intent that paid for the order
            status: Initial status
            notes: Free-form notes

        Returns:
            Created order with items loaded

        Raises:
            PaymentValidationError: Nothing to order
            PaymentError: The order could not be stored (order_inconsistent)
        """
        if isinstance(source, MerchantGroup):
            lines: List[CartItemData] = list(source.items)
            seller_id: Optional[str] = source.seller_id
            tax, shipping = source.tax, source.shipping
            subtotal, total = source.subtotal, source.total
            currency = settings.currency
        else:
            lines = [item for group in source.merchant_groups for item in group.items]
            sellers = {group.seller_id for group in source.merchant_groups}
            seller_id = sellers.pop() if len(sellers) == 1 else None
            tax, shipping = source.tax, source.shipping
            subtotal, total = source.subtotal, source.total
            currency = source.currency

        if not lines:
            raise PaymentValidationError("Cannot create an order without items", code=ErrorCode.CART_EMPTY)

        order = Order(
            buyer_id=buyer_id,
            seller_id=seller_id,
            order_number=generate_order_number(),
            status=status,
            subtotal=subtotal,
            tax_amount=tax,
            shipping_amount=shipping,
            total_amount=total,
            currency=currency,
            payment_intent_id=payment_intent_id,
            notes=notes,
        )
        order.items = [
            OrderItem(
                product_id=line.product_id,
                seller_id=line.seller_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.line_total,
                product_snapshot=line.product_snapshot.model_dump(),
            )
            for line in lines
        ]

        try:
            async with self.db.begin_nested():
                self.db.add(order)
                await self.db.flush()
        except SQLAlchemyError as e:
            logger.error(
                "order_create_failed",
                buyer_id=buyer_id,
                seller_id=seller_id,
                payment_intent_id=payment_intent_id,
                error=str(e),
            )
            raise PaymentError(
                "Payment was taken but the order could not be saved",
                code=ErrorCode.ORDER_INCONSISTENT,
            ) from e

        logger.info(
            "order_created",
            order_id=str(order.id),
            order_number=order.order_number,
            buyer_id=buyer_id,
            seller_id=seller_id,
            total_amount=total,
            item_count=len(lines),
        )
        return order

    async def get_order(self, order_id: UUID, buyer_id: Optional[str] = None) -> Optional[Order]:
        """
        Get order by ID.

        Args:
            order_id: Order UUID
            buyer_id: When given, only the buyer's own order is returned

        Returns:
            Order if found, None otherwise
        """
        query = select(Order).where(Order.id == order_id)
        if buyer_id is not None:
            query = query.where(Order.buyer_id == buyer_id)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def list_orders(
        self,
        buyer_id: str,
        status: Optional[OrderStatus] = None,
        page: int = 1,
        page_size: int = 100,
    ) -> List[Order]:
        """List a buyer's orders, newest first."""
        query = select(Order).where(Order.buyer_id == buyer_id)
        if status:
            query = query.where(Order.status == status)

        query = query.order_by(Order.created_at.desc())
        query = query.offset((page - 1) * page_size).limit(page_size)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def update_status(self, order_id: UUID, status: OrderStatus) -> Order:
        """
        Move an order forward.

        Only ``pending -> completed`` and ``pending -> failed`` are allowed.
        Setting the current status again is a no-op.

        Raises:
            PaymentValidationError: Unknown order or backward transition
        """
        order = await self.get_order(order_id)
        if order is None:
            raise PaymentValidationError(f"Order {order_id} not found", code=ErrorCode.ORDER_NOT_FOUND)

        if order.status == status:
            return order

        if status not in ORDER_TRANSITIONS[order.status]:
            logger.warning(
                "order_transition_rejected",
                order_id=str(order_id),
                current_status=order.status.value,
                requested_status=status.value,
            )
            raise PaymentValidationError(
                f"Cannot move order from {order.status.value} to {status.value}",
                code=ErrorCode.INVALID_STATE_TRANSITION,
            )

        order.status = status
        await self.db.flush()

        logger.info("order_status_updated", order_id=str(order_id), status=status.value)
        return order

"""Order and order item models."""
import enum

from sqlalchemy import Column, ForeignKey, Integer, JSON, String, Text, Uuid, Enum as SQLEnum
from sqlalchemy.orm import relationship

from marketplace.models.base import Base


class OrderStatus(enum.Enum):
    """Order lifecycle. Transitions only go forward from PENDING."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Order(Base):
    """
    Receipt for a paid checkout.

    total_amount always equals sum(items.total_price) + tax_amount + shipping_amount.
    """

    __tablename__ = "orders"

    buyer_id = Column(String, nullable=False, index=True)
    seller_id = Column(String, nullable=True, index=True)  # Set for single-merchant orders
    order_number = Column(String, nullable=False, unique=True)
    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    subtotal = Column(Integer, nullable=False)
    tax_amount = Column(Integer, nullable=False, default=0)
    shipping_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    payment_intent_id = Column(String, nullable=True, index=True)
    notes = Column(Text, nullable=True)

    # Relationships
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", lazy="selectin")

    def __repr__(self) -> str:
        """String representation."""
        return f"<Order(id={self.id}, number={self.order_number}, status={self.status.value}, total={self.total_amount})>"


class OrderItem(Base):
    """Line item of an order, carrying the same product snapshot as the cart line."""

    __tablename__ = "order_items"

    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String, nullable=False)
    seller_id = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    total_price = Column(Integer, nullable=False)
    product_snapshot = Column(JSON, nullable=False, default=dict)

    # Relationships
    order = relationship("Order", back_populates="items")

    def __repr__(self) -> str:
        """String representation."""
        return f"<OrderItem(order_id={self.order_id}, product_id={self.product_id}, quantity={self.quantity})>"

"""Cart item model."""
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, JSON, String

from marketplace.models.base import Base


class CartItem(Base):
    """
    One line in a user's cart.

    ``product_snapshot`` is captured when the item is added (title, merchant
    name, condition) so prices and labels stay stable if the listing changes.
    """

    __tablename__ = "cart_items"

    user_id = Column(String, nullable=False, index=True)
    product_id = Column(String, nullable=False, index=True)
    seller_id = Column(String, nullable=True, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Integer, nullable=False)  # Amount in cents
    product_snapshot = Column(JSON, nullable=False, default=dict)
    added_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self) -> str:
        """String representation."""
        return f"<CartItem(id={self.id}, product_id={self.product_id}, quantity={self.quantity})>"

"""Payment method model mirroring instruments saved with the processor."""
from sqlalchemy import Column, String, Boolean, Integer

from marketplace.models.base import Base


class PaymentMethod(Base):
    """
    Tokenized payment instrument saved by a user.

    The processor is the source of truth; this row mirrors its display
    details so listing methods does not need a processor round trip.
    At most one row per user has ``is_default`` set.
    """

    __tablename__ = "payment_methods"

    user_id = Column(String, nullable=False, index=True)
    processor_token = Column(String, nullable=False, unique=True)  # Stripe pm_...
    type = Column(String, nullable=False, default="card")
    brand = Column(String, nullable=True)  # visa, mastercard, amex
    last4 = Column(String(4), nullable=True)
    exp_month = Column(Integer, nullable=True)
    exp_year = Column(Integer, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        """String representation."""
        return f"<PaymentMethod(id={self.id}, brand={self.brand}, last4={self.last4}, default={self.is_default})>"

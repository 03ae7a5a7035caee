"""Transaction model for processor-settled charges."""
import enum

from sqlalchemy import Column, Integer, String, Text, Enum as SQLEnum

from marketplace.models.base import Base


class TransactionStatus(enum.Enum):
    """Settlement status as last reported by the processor."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class TransactionType(enum.Enum):
    """What the charge paid for."""

    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    PAYOUT = "payout"


class Transaction(Base):
    """
    Authoritative record of one payment intent.

    Written by the backend when the intent is created and advanced by the
    processor webhook. Visible to the buyer and to the seller.
    """

    __tablename__ = "transactions"

    buyer_id = Column(String, nullable=False, index=True)
    seller_id = Column(String, nullable=True, index=True)
    payment_intent_id = Column(String, nullable=False, unique=True, index=True)
    amount = Column(Integer, nullable=False)  # Amount in cents
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING, index=True)
    transaction_type = Column(SQLEnum(TransactionType), nullable=False, default=TransactionType.PAYMENT)
    description = Column(Text, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Transaction(id={self.id}, intent={self.payment_intent_id}, status={self.status.value}, amount={self.amount})>"

"""Transaction service for charge history and settlement."""
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Iterable, Optional, List

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.models.subscription import Subscription, SubscriptionStatus
from marketplace.models.transaction import Transaction, TransactionStatus, TransactionType

logger = structlog.get_logger(__name__)

# Terminal intent outcomes -> settlement status. Webhooks report declines as "failed".
INTENT_STATUS_MAP = {
    "succeeded": TransactionStatus.SUCCEEDED,
    "canceled": TransactionStatus.CANCELED,
    "failed": TransactionStatus.FAILED,
}


def total_revenue(transactions: Iterable[Transaction]) -> int:
    """Sum of succeeded amounts, in cents."""
    return sum(t.amount for t in transactions if t.status == TransactionStatus.SUCCEEDED)


def monthly_revenue(transactions: Iterable[Transaction]) -> dict[str, int]:
    """Succeeded amounts bucketed by calendar month (``YYYY-MM``), oldest month first."""
    buckets: dict[str, int] = defaultdict(int)
    for t in transactions:
        if t.status == TransactionStatus.SUCCEEDED:
            buckets[t.created_at.strftime("%Y-%m")] += t.amount
    return dict(sorted(buckets.items()))


class TransactionService:
    """Service layer for transaction records."""

    def __init__(self, db: AsyncSession):
        """Initialize transaction service with database session."""
        self.db = db

    async def list_transactions(self, buyer_id: str, limit: int = 100) -> List[Transaction]:
        """List a buyer's transactions, newest first."""
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.buyer_id == buyer_id)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_seller_transactions(self, seller_id: str, limit: int = 100) -> List[Transaction]:
        """List transactions paid to a seller, newest first."""
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.seller_id == seller_id)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_by_date_range(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> List[Transaction]:
        """
        List transactions the user took part in, as buyer or seller.

        Args:
            user_id: Buyer or seller
            start: Inclusive start
            end: Inclusive end date; the whole end day is included

        Returns:
            Transactions ordered newest first
        """
        end_exclusive = end + timedelta(days=1) if end.time() == datetime.min.time() else end
        result = await self.db.execute(
            select(Transaction)
            .where(
                or_(Transaction.buyer_id == user_id, Transaction.seller_id == user_id),
                Transaction.created_at >= start,
                Transaction.created_at < end_exclusive,
            )
            .order_by(Transaction.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_by_payment_intent(self, payment_intent_id: str) -> Optional[Transaction]:
        result = await self.db.execute(
            select(Transaction).where(Transaction.payment_intent_id == payment_intent_id)
        )
        return result.scalar_one_or_none()

    async def record_pending(
        self,
        buyer_id: str,
        payment_intent_id: str,
        amount: int,
        currency: str,
        seller_id: Optional[str] = None,
        description: Optional[str] = None,
        transaction_type: TransactionType = TransactionType.PAYMENT,
    ) -> Transaction:
        """Store the pending record for a newly created intent."""
        transaction = Transaction(
            buyer_id=buyer_id,
            seller_id=seller_id,
            payment_intent_id=payment_intent_id,
            amount=amount,
            currency=currency,
            status=TransactionStatus.PENDING,
            transaction_type=transaction_type,
            description=description,
        )
        self.db.add(transaction)
        await self.db.flush()

        logger.info(
            "transaction_recorded",
            payment_intent_id=payment_intent_id,
            amount=amount,
            transaction_type=transaction_type.value,
        )
        return transaction

    async def settle(self, payment_intent_id: str, intent_status: str) -> Optional[Transaction]:
        """
        Apply the processor's view of an intent to its transaction record.

        Settled records never move again. A succeeded intent also activates
        the one-time plan purchase it paid for, if any.

        Args:
            payment_intent_id: Processor intent ID
            intent_status: Processor intent status

        Returns:
            Updated transaction, or None if no record exists for the intent
        """
        status = INTENT_STATUS_MAP.get(intent_status)
        transaction = await self.get_by_payment_intent(payment_intent_id)

        if status is not None and transaction is not None and transaction.status == TransactionStatus.PENDING:
            transaction.status = status
            logger.info("transaction_settled", payment_intent_id=payment_intent_id, status=status.value)

        if status == TransactionStatus.SUCCEEDED:
            await self._activate_plan_purchase(payment_intent_id)
        elif status in (TransactionStatus.FAILED, TransactionStatus.CANCELED):
            await self._expire_plan_purchase(payment_intent_id)

        await self.db.flush()
        return transaction

    async def _activate_plan_purchase(self, payment_intent_id: str) -> None:
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.payment_intent_id == payment_intent_id,
                Subscription.status == SubscriptionStatus.PENDING,
            )
        )
        subscription = result.scalar_one_or_none()
        if subscription is not None:
            subscription.status = SubscriptionStatus.ACTIVE
            logger.info("subscription_activated", subscription_id=str(subscription.id), user_id=subscription.user_id)

    async def _expire_plan_purchase(self, payment_intent_id: str) -> None:
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.payment_intent_id == payment_intent_id,
                Subscription.status == SubscriptionStatus.PENDING,
            )
        )
        subscription = result.scalar_one_or_none()
        if subscription is not None:
            subscription.status = SubscriptionStatus.EXPIRED
            logger.info("subscription_payment_failed", subscription_id=str(subscription.id))

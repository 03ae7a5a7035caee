"""Integration tests for transaction records and settlement."""
from datetime import datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.models.subscription import Subscription, SubscriptionStatus, SubscriptionType
from marketplace.models.transaction import Transaction, TransactionStatus, TransactionType
from marketplace.services.transaction_service import TransactionService, monthly_revenue, total_revenue
from utils.factories import SubscriptionFactory, TransactionFactory


@pytest.fixture
def transactions(db_session: AsyncSession) -> TransactionService:
    return TransactionService(db_session)


async def _transaction(db_session: AsyncSession, **overrides) -> Transaction:
    transaction = Transaction(**TransactionFactory.create(overrides))
    db_session.add(transaction)
    await db_session.flush()
    return transaction


async def _pending_pass(db_session: AsyncSession, user_id: str, payment_intent_id: str) -> Subscription:
    subscription = Subscription(
        **SubscriptionFactory.create(
            {
                "user_id": user_id,
                "status": SubscriptionStatus.PENDING,
                "type": SubscriptionType.ONE_TIME,
                "payment_intent_id": payment_intent_id,
                "processor_subscription_id": None,
            }
        )
    )
    db_session.add(subscription)
    await db_session.flush()
    return subscription


@pytest.mark.asyncio
async def test_record_pending(transactions: TransactionService, user_id: str) -> None:
    transaction = await transactions.record_pending(
        user_id,
        "pi_123",
        2500,
        "usd",
        seller_id="seller_1",
        description="Order from Lens Shop",
    )

    assert transaction.status == TransactionStatus.PENDING
    assert transaction.transaction_type == TransactionType.PAYMENT
    assert (await transactions.get_by_payment_intent("pi_123")).id == transaction.id


@pytest.mark.asyncio
async def test_settle_moves_pending_record_once(transactions: TransactionService, user_id: str) -> None:
    await transactions.record_pending(user_id, "pi_123", 2500, "usd")

    settled = await transactions.settle("pi_123", "succeeded")
    assert settled.status == TransactionStatus.SUCCEEDED

    # A late failure event must not rewrite a settled record
    again = await transactions.settle("pi_123", "failed")
    assert again.status == TransactionStatus.SUCCEEDED


@pytest.mark.asyncio
@pytest.mark.parametrize("intent_status", ["processing", "requires_action", "requires_payment_method"])
async def test_non_terminal_status_leaves_record_pending(
    transactions: TransactionService,
    user_id: str,
    intent_status: str,
) -> None:
    await transactions.record_pending(user_id, "pi_123", 2500, "usd")

    transaction = await transactions.settle("pi_123", intent_status)

    assert transaction.status == TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_settle_unknown_intent(transactions: TransactionService) -> None:
    assert await transactions.settle("pi_missing", "succeeded") is None


@pytest.mark.asyncio
async def test_succeeded_intent_activates_pending_pass(
    transactions: TransactionService,
    db_session: AsyncSession,
    user_id: str,
) -> None:
    await transactions.record_pending(user_id, "pi_pass", 900, "usd", transaction_type=TransactionType.SUBSCRIPTION)
    subscription = await _pending_pass(db_session, user_id, "pi_pass")

    await transactions.settle("pi_pass", "succeeded")

    assert subscription.status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
@pytest.mark.parametrize("intent_status", ["failed", "canceled"])
async def test_failed_intent_expires_pending_pass(
    transactions: TransactionService,
    db_session: AsyncSession,
    user_id: str,
    intent_status: str,
) -> None:
    subscription = await _pending_pass(db_session, user_id, "pi_pass")

    await transactions.settle("pi_pass", intent_status)

    assert subscription.status == SubscriptionStatus.EXPIRED


@pytest.mark.asyncio
async def test_listing_for_buyer_and_seller(
    transactions: TransactionService,
    db_session: AsyncSession,
    user_id: str,
) -> None:
    bought = await _transaction(db_session, buyer_id=user_id, seller_id="seller_1")
    sold = await _transaction(db_session, buyer_id="someone-else", seller_id=user_id)

    assert [t.id for t in await transactions.list_transactions(user_id)] == [bought.id]
    assert [t.id for t in await transactions.list_seller_transactions(user_id)] == [sold.id]


@pytest.mark.asyncio
async def test_date_range_includes_whole_end_day(
    transactions: TransactionService,
    db_session: AsyncSession,
    user_id: str,
) -> None:
    before = await _transaction(db_session, buyer_id=user_id, created_at=datetime(2026, 2, 28, 23, 59))
    first_day = await _transaction(db_session, buyer_id=user_id, created_at=datetime(2026, 3, 1, 0, 0))
    last_day = await _transaction(db_session, seller_id=user_id, created_at=datetime(2026, 3, 31, 22, 15))
    after = await _transaction(db_session, buyer_id=user_id, created_at=datetime(2026, 4, 1, 0, 0))

    found = await transactions.list_by_date_range(user_id, datetime(2026, 3, 1), datetime(2026, 3, 31))

    assert [t.id for t in found] == [last_day.id, first_day.id]
    assert before.id not in {t.id for t in found}
    assert after.id not in {t.id for t in found}


def test_revenue_helpers_count_succeeded_only() -> None:
    rows = [
        Transaction(**TransactionFactory.create(
            {"amount": 1000, "status": TransactionStatus.SUCCEEDED, "created_at": datetime(2026, 1, 15)}
        )),
        Transaction(**TransactionFactory.create(
            {"amount": 2500, "status": TransactionStatus.SUCCEEDED, "created_at": datetime(2026, 1, 20)}
        )),
        Transaction(**TransactionFactory.create(
            {"amount": 700, "status": TransactionStatus.SUCCEEDED, "created_at": datetime(2026, 2, 1)}
        )),
        Transaction(**TransactionFactory.create(
            {"amount": 9999, "status": TransactionStatus.FAILED, "created_at": datetime(2026, 2, 3)}
        )),
    ]

    assert total_revenue(rows) == 4200
    assert monthly_revenue(rows) == {"2026-01": 3500, "2026-02": 700}

"""Unit tests for payment intent creation and verification."""
import pytest

from marketplace.errors import PaymentValidationError
from marketplace.schemas.error import ErrorCode
from marketplace.schemas.payment import IntentStatus
from marketplace.services.payment_intent_gateway import PaymentIntentGateway, validate_amount
from utils.fakes import FakeBackend


@pytest.mark.asyncio
async def test_identical_calls_create_distinct_intents(gateway: PaymentIntentGateway, fake_backend: FakeBackend) -> None:
    first = await gateway.create_intent(2500, description="Order", payment_method_id="pm_1")
    second = await gateway.create_intent(2500, description="Order", payment_method_id="pm_1")

    assert first.id != second.id
    keys = [payload["idempotencyKey"] for payload in fake_backend.called("create-payment-intent")]
    assert len(set(keys)) == 2


@pytest.mark.asyncio
async def test_one_time_intent_waits_for_the_sheet(gateway: PaymentIntentGateway, fake_backend: FakeBackend) -> None:
    intent = await gateway.create_intent(1800, seller_id="seller_9")

    payload = fake_backend.called("create-payment-intent")[0]
    assert "paymentMethodId" not in payload
    assert payload["sellerId"] == "seller_9"
    assert payload["currency"] == "usd"
    assert intent.status == IntentStatus.REQUIRES_PAYMENT_METHOD
    assert intent.has_client_secret


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -100, 10.5, "1000", True, None])
async def test_invalid_amount_is_rejected_before_any_call(
    gateway: PaymentIntentGateway,
    fake_backend: FakeBackend,
    amount,
) -> None:
    with pytest.raises(PaymentValidationError) as exc_info:
        await gateway.create_intent(amount)

    assert exc_info.value.code == ErrorCode.INVALID_AMOUNT
    assert fake_backend.calls == []


@pytest.mark.asyncio
async def test_retrieve_reports_backend_status(gateway: PaymentIntentGateway, fake_backend: FakeBackend) -> None:
    intent = await gateway.create_intent(900)
    fake_backend.statuses[intent.id] = "processing"

    retrieved = await gateway.retrieve_intent(intent.id)

    assert retrieved.id == intent.id
    assert retrieved.status == IntentStatus.PROCESSING
    assert not retrieved.succeeded


def test_validate_amount_returns_cents() -> None:
    assert validate_amount(1) == 1
    assert validate_amount(5240) == 5240

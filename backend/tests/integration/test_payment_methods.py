"""Integration tests for saved payment methods."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.errors import PaymentNetworkError, PaymentValidationError, ProcessorError
from marketplace.models.payment_method import PaymentMethod
from marketplace.schemas.error import ErrorCode
from marketplace.services.payment_method_service import PaymentMethodService
from utils.factories import PaymentMethodFactory
from utils.fakes import FakeBackend, FakePaymentSheet, backend_error


async def _seed(db_session: AsyncSession, user_id: str, count: int, default_index: int | None = 0) -> list[PaymentMethod]:
    """Insert ``count`` methods, oldest first, with distinct creation times."""
    base = datetime.utcnow() - timedelta(days=1)
    rows = [
        PaymentMethod(
            **PaymentMethodFactory.create(
                {
                    "user_id": user_id,
                    "is_default": index == default_index,
                    "created_at": base + timedelta(minutes=index),
                }
            )
        )
        for index in range(count)
    ]
    db_session.add_all(rows)
    await db_session.flush()
    return rows


def _defaults(methods: list[PaymentMethod]) -> list[PaymentMethod]:
    return [pm for pm in methods if pm.is_default]


@pytest.mark.asyncio
async def test_first_registered_method_becomes_default(methods: PaymentMethodService, user_id: str) -> None:
    first = await methods.register_payment_method(user_id, "pm_first")
    second = await methods.register_payment_method(user_id, "pm_second")

    assert first.is_default
    assert not second.is_default
    assert first.processor_token == "pm_first"
    assert len(_defaults(await methods.list_payment_methods(user_id))) == 1


@pytest.mark.asyncio
async def test_register_is_idempotent_per_token(methods: PaymentMethodService, user_id: str) -> None:
    first = await methods.register_payment_method(user_id, "pm_same")
    again = await methods.register_payment_method(user_id, "pm_same")

    assert again.id == first.id
    assert len(await methods.list_payment_methods(user_id)) == 1


@pytest.mark.asyncio
async def test_token_of_another_user_is_rejected(methods: PaymentMethodService, user_id: str) -> None:
    await methods.register_payment_method("someone-else", "pm_taken")

    with pytest.raises(PaymentValidationError) as exc_info:
        await methods.register_payment_method(user_id, "pm_taken")

    assert exc_info.value.code == ErrorCode.PAYMENT_METHOD_NOT_FOUND


@pytest.mark.asyncio
async def test_set_default_leaves_exactly_one_default(
    methods: PaymentMethodService,
    fake_backend: FakeBackend,
    db_session: AsyncSession,
    user_id: str,
) -> None:
    rows = await _seed(db_session, user_id, 3, default_index=0)

    updated = await methods.set_default_payment_method(user_id, rows[2].id)

    assert updated.id == rows[2].id
    assert updated.is_default
    listed = await methods.list_payment_methods(user_id)
    assert [pm.id for pm in _defaults(listed)] == [rows[2].id]
    assert fake_backend.called("set-default-payment-method") == [{"paymentMethodId": rows[2].processor_token}]


@pytest.mark.asyncio
async def test_set_default_failure_keeps_local_flags(
    methods: PaymentMethodService,
    fake_backend: FakeBackend,
    db_session: AsyncSession,
    user_id: str,
) -> None:
    rows = await _seed(db_session, user_id, 2, default_index=0)
    fake_backend.errors["set-default-payment-method"] = backend_error(503, "network", ErrorCode.BACKEND_UNAVAILABLE)

    with pytest.raises(PaymentNetworkError):
        await methods.set_default_payment_method(user_id, rows[1].id)

    listed = await methods.list_payment_methods(user_id)
    assert [pm.id for pm in _defaults(listed)] == [rows[0].id]


@pytest.mark.asyncio
async def test_set_default_does_not_touch_other_users(
    methods: PaymentMethodService,
    db_session: AsyncSession,
    user_id: str,
) -> None:
    mine = await _seed(db_session, user_id, 2, default_index=0)
    theirs = await _seed(db_session, "someone-else", 1, default_index=0)

    await methods.set_default_payment_method(user_id, mine[1].id)

    other = await methods.list_payment_methods("someone-else")
    assert other[0].id == theirs[0].id
    assert other[0].is_default


@pytest.mark.asyncio
async def test_set_default_of_unknown_method_fails(methods: PaymentMethodService, user_id: str) -> None:
    with pytest.raises(PaymentValidationError) as exc_info:
        await methods.set_default_payment_method(user_id, "not-a-uuid")

    assert exc_info.value.code == ErrorCode.PAYMENT_METHOD_NOT_FOUND


@pytest.mark.asyncio
async def test_removing_default_promotes_most_recent(
    methods: PaymentMethodService,
    fake_backend: FakeBackend,
    db_session: AsyncSession,
    user_id: str,
) -> None:
    rows = await _seed(db_session, user_id, 3, default_index=0)

    await methods.remove_payment_method(user_id, rows[0].id)

    listed = await methods.list_payment_methods(user_id)
    assert [pm.id for pm in listed] == [rows[2].id, rows[1].id]
    assert [pm.id for pm in _defaults(listed)] == [rows[2].id]
    assert fake_backend.called("detach-payment-method") == [{"paymentMethodId": rows[0].processor_token}]


@pytest.mark.asyncio
async def test_removing_non_default_keeps_default(
    methods: PaymentMethodService,
    db_session: AsyncSession,
    user_id: str,
) -> None:
    rows = await _seed(db_session, user_id, 2, default_index=0)

    await methods.remove_payment_method(user_id, rows[1].id)

    listed = await methods.list_payment_methods(user_id)
    assert [pm.id for pm in listed] == [rows[0].id]
    assert listed[0].is_default


@pytest.mark.asyncio
async def test_detach_failure_keeps_local_row(
    methods: PaymentMethodService,
    fake_backend: FakeBackend,
    db_session: AsyncSession,
    user_id: str,
) -> None:
    rows = await _seed(db_session, user_id, 1)
    fake_backend.errors["detach-payment-method"] = backend_error(402, "stripe", ErrorCode.PROCESSOR_ERROR)

    with pytest.raises(ProcessorError):
        await methods.remove_payment_method(user_id, rows[0].id)

    assert [pm.id for pm in await methods.list_payment_methods(user_id)] == [rows[0].id]


@pytest.mark.asyncio
async def test_default_falls_back_to_most_recent(
    methods: PaymentMethodService,
    db_session: AsyncSession,
    user_id: str,
) -> None:
    rows = await _seed(db_session, user_id, 2, default_index=None)

    default = await methods.get_default_payment_method(user_id)

    assert default.id == rows[1].id
    assert await methods.get_default_payment_method("nobody") is None


@pytest.mark.asyncio
async def test_validate_accepts_local_id_or_token_of_owner_only(
    methods: PaymentMethodService,
    db_session: AsyncSession,
    user_id: str,
) -> None:
    mine = (await _seed(db_session, user_id, 1))[0]
    theirs = (await _seed(db_session, "someone-else", 1))[0]

    assert (await methods.validate_payment_method(user_id, str(mine.id))).id == mine.id
    assert (await methods.validate_payment_method(user_id, mine.processor_token)).id == mine.id
    assert await methods.validate_payment_method(user_id, str(theirs.id)) is None
    assert await methods.validate_payment_method(user_id, "pm_removed_long_ago") is None


@pytest.mark.asyncio
async def test_setup_flow_saves_card(
    methods: PaymentMethodService,
    fake_backend: FakeBackend,
    sheet: FakePaymentSheet,
    user_id: str,
) -> None:
    payment_method = await methods.add_via_setup_flow(user_id)

    assert payment_method is not None
    assert payment_method.processor_token == fake_backend.setup_card["id"]
    assert payment_method.last4 == fake_backend.setup_card["last4"]
    assert payment_method.is_default
    assert sheet.configs[0].setup_intent_client_secret is not None
    assert sheet.configs[0].payment_intent_client_secret is None
    assert not methods.presenter.lock.held


@pytest.mark.asyncio
async def test_setup_flow_cancel_saves_nothing(
    db_session: AsyncSession,
    backend,
    fake_backend: FakeBackend,
    lock,
    user_id: str,
) -> None:
    from marketplace.services.confirmation import ConfirmationPresenter

    methods = PaymentMethodService(db_session, backend, ConfirmationPresenter(FakePaymentSheet.canceling(), lock))

    assert await methods.add_via_setup_flow(user_id) is None
    assert await methods.list_payment_methods(user_id) == []
    assert fake_backend.called("retrieve-setup-intent") == []
    assert not lock.held


@pytest.mark.asyncio
async def test_setup_flow_incomplete_intent_fails(
    methods: PaymentMethodService,
    fake_backend: FakeBackend,
    user_id: str,
) -> None:
    fake_backend.setup_status = "requires_payment_method"

    with pytest.raises(ProcessorError) as exc_info:
        await methods.add_via_setup_flow(user_id)

    assert exc_info.value.code == ErrorCode.PAYMENT_NOT_COMPLETED
    assert await methods.list_payment_methods(user_id) == []


@pytest.mark.asyncio
async def test_setup_flow_rejected_while_sheet_busy(
    methods: PaymentMethodService,
    fake_backend: FakeBackend,
    user_id: str,
) -> None:
    methods.presenter.lock.try_acquire("one-time")

    with pytest.raises(PaymentValidationError) as exc_info:
        await methods.add_via_setup_flow(user_id)

    assert exc_info.value.code == ErrorCode.PAYMENT_IN_PROGRESS
    assert fake_backend.calls == []

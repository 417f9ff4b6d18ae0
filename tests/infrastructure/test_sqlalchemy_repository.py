from decimal import Decimal

import pytest
import pytest_asyncio

pytest.importorskip("aiosqlite")

from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import Payment, PaymentStatus
from domain.payment.repository import DuplicatePaymentError, PaymentFilter
from infrastructure.database import _build_async_url, create_session_factory, create_tables, drop_tables
from infrastructure.repositories.payment_repository import SQLAlchemyPaymentRepository


@pytest_asyncio.fixture
async def repo():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    await create_tables(engine)
    try:
        yield SQLAlchemyPaymentRepository(create_session_factory(engine))
    finally:
        await drop_tables(engine)
        await engine.dispose()


def _payment(order_id="O1", merchant_id="M1", client_id="C1") -> Payment:
    return Payment.create(
        client_id=client_id,
        merchant_id=merchant_id,
        order_id=order_id,
        amount="100.00",
        currency="USD",
        method="card",
        metadata={"cart": "42"},
    )


def test_build_async_url_adds_driver():
    assert _build_async_url("sqlite:///tmp.db").startswith("sqlite+aiosqlite")
    assert _build_async_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
    with pytest.raises(ValueError):
        _build_async_url("oracle://u:p@h/db")


@pytest.mark.asyncio
async def test_create_and_get_round_trip(repo):
    p = _payment()
    await repo.create(p)
    loaded = await repo.get_by_id(p.id)
    assert loaded is not None
    assert loaded.amount == Decimal("100.00")
    assert loaded.metadata == {"cart": "42"}
    assert loaded.created_at.tzinfo is not None
    assert len(loaded.ledger) == 1
    assert loaded.ledger[0].from_status is None
    assert await repo.get_by_id("missing") is None


@pytest.mark.asyncio
async def test_duplicate_active_order_violates_unique_index(repo):
    await repo.create(_payment())
    with pytest.raises(DuplicatePaymentError):
        await repo.create(_payment())


@pytest.mark.asyncio
async def test_cancelled_payment_frees_order(repo):
    first = _payment()
    await repo.create(first)
    first.mark_cancelled()
    await repo.update(first)

    assert await repo.get_by_merchant_and_order("M1", "O1") is None
    second = _payment()
    await repo.create(second)
    found = await repo.get_by_merchant_and_order("M1", "O1")
    assert found.id == second.id


@pytest.mark.asyncio
async def test_update_appends_ledger_and_refunds(repo):
    p = _payment()
    await repo.create(p)
    p.mark_processing()
    await repo.update(p)
    p.mark_completed("ch_123")
    p.mark_refunded("25.00", "re_1", reason="damaged")
    await repo.update(p)

    loaded = await repo.get_by_id(p.id)
    assert loaded.status == PaymentStatus.PARTIALLY_REFUNDED
    assert loaded.processor_ref == "ch_123"
    assert loaded.refunded_amount == Decimal("25.00")
    assert [e.to_status for e in loaded.ledger] == [
        PaymentStatus.PENDING,
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.PARTIALLY_REFUNDED,
    ]
    assert [(r.refund_ref, r.amount) for r in loaded.refunds] == [("re_1", Decimal("25.00"))]


@pytest.mark.asyncio
async def test_list_filters_and_pages(repo):
    for i in range(3):
        await repo.create(_payment(order_id=f"O{i}", client_id="CA"))
    other = _payment(order_id="X", merchant_id="M2", client_id="CB")
    await repo.create(other)

    assert len(await repo.list(PaymentFilter(client_id="CA"))) == 3
    assert [p.id for p in await repo.list(PaymentFilter(merchant_id="M2"))] == [other.id]
    assert len(await repo.list(PaymentFilter(status=PaymentStatus.PENDING, limit=2))) == 2
    assert len(await repo.list(PaymentFilter(client_id="CA", offset=2))) == 1


@pytest.mark.asyncio
async def test_amounts_round_trip_at_cent_precision(repo):
    p = Payment.create(client_id="C1", merchant_id="M1", order_id="O-cents", amount="10.5", currency="USD", method="card")
    await repo.create(p)
    p.mark_processing()
    p.mark_completed("ch_1")
    p.begin_refund("0.01")
    await repo.update(p)

    loaded = await repo.get_by_id(p.id)
    assert loaded.amount == Decimal("10.50")
    assert loaded.pending_refund_amount == Decimal("0.01")
    assert loaded.remaining_refundable() == Decimal("10.50")

    loaded.mark_refunded("0.01", "re_1")
    await repo.update(loaded)
    final = await repo.get_by_id(p.id)
    assert final.pending_refund_amount is None
    assert final.refunded_amount == Decimal("0.01")
    assert final.remaining_refundable() == Decimal("10.49")


def test_sub_cent_amount_never_reaches_storage():
    with pytest.raises(DomainValidationException):
        _payment_with_amount("0.001")


def _payment_with_amount(amount) -> Payment:
    return Payment.create(client_id="C1", merchant_id="M1", order_id="O1", amount=amount, currency="USD", method="card")

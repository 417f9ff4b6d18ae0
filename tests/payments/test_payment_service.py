import asyncio
from decimal import Decimal

import pytest
from pydantic import ValidationError

from application.dtos.payments import CreatePaymentRequest, ListPaymentsQuery, ProcessorRefund, ProcessorResult
from application.ports.cache import CacheUnavailableError
from application.services.distributed_lock import DistributedLock, payment_lock_key
from application.services.payment_service import PaymentService
from application.services.processor_router import ProcessorRouter
from core.settings import LockSettings, PaymentSettings, RateLimitSettings
from domain.common.exceptions import InternalServiceException, RateLimitedException
from domain.payment.entity import Payment, PaymentMethod, PaymentStatus
from domain.payment.events import PaymentEvent
from domain.payment.exceptions import (
    AlreadyInProgressException,
    ExternalProcessorException,
    InvalidStateTransitionException,
    PaymentNotFoundException,
    RefundExceedsRemainingException,
    RefundInProgressException,
    UnsupportedCurrencyException,
    UnsupportedMethodException,
)
from domain.payment.repository import PaymentFilter, RepositoryError
from infrastructure.cache import InMemoryCache


class RecordingProcessor:
    name = "recording"

    def __init__(self, *, ref: str = "ch_123", delay: float = 0.0, fail: bool = False, refund_fail: bool = False):
        self.ref = ref
        self.delay = delay
        self.fail = fail
        self.refund_fail = refund_fail
        self.process_calls = 0
        self.refund_calls = 0

    async def process(self, payment, details):
        self.process_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("card declined")
        return ProcessorResult(processor_ref=self.ref)

    async def refund(self, payment, amount, reason):
        self.refund_calls += 1
        if self.refund_fail:
            raise RuntimeError("refund rejected")
        return ProcessorRefund(refund_ref=f"re_{self.refund_calls}")


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events = []

    async def notify_status_change(self, payment, event, metadata=None):
        if self.fail:
            raise ConnectionError("webhook down")
        self.events.append((payment.id, event, payment.status))

    async def aclose(self):
        return None


def _settings(limit: int = 100) -> PaymentSettings:
    return PaymentSettings(
        rate_limit=RateLimitSettings(limit=limit, window_seconds=60),
        lock=LockSettings(ttl_seconds=30, create_ttl_seconds=0.3),
    )


def _service(repository, cache, processor=None, notifier=None, limit=100):
    processor = processor or RecordingProcessor()
    router = ProcessorRouter({PaymentMethod.CARD: processor}, timeout_seconds=1)
    return PaymentService(repository, cache, router, notifier, settings=_settings(limit))


def _filter() -> PaymentFilter:
    return PaymentFilter(limit=100)


def _request(order_id="O1", merchant_id="M1", **overrides) -> CreatePaymentRequest:
    data = dict(
        client_id="C1",
        merchant_id=merchant_id,
        order_id=order_id,
        amount=Decimal("100.00"),
        currency="USD",
        method="card",
    )
    data.update(overrides)
    return CreatePaymentRequest(**data)


# ---- create ----

@pytest.mark.asyncio
async def test_create_payment_is_pending(repository, cache):
    svc = _service(repository, cache)
    payment = await svc.create_payment(_request())
    assert payment.status == PaymentStatus.PENDING
    assert payment.processor_ref is None
    stored = await repository.get_by_id(payment.id)
    assert stored is not None and len(stored.ledger) == 1


@pytest.mark.asyncio
async def test_create_is_idempotent_per_merchant_and_order(repository, cache):
    svc = _service(repository, cache)
    first = await svc.create_payment(_request())
    second = await svc.create_payment(_request(amount=Decimal("5.00")))
    assert second.id == first.id
    assert second.amount == Decimal("100.00")
    stored = await repository.get_by_id(first.id)
    assert len(stored.ledger) == 1
    assert len(await repository.list(_filter())) == 1


@pytest.mark.asyncio
async def test_concurrent_creates_resolve_to_one_payment(repository, cache):
    services = [_service(repository, cache.sibling()) for _ in range(5)]
    results = await asyncio.gather(*(s.create_payment(_request()) for s in services))
    assert len({p.id for p in results}) == 1
    assert len(await repository.list(_filter())) == 1


@pytest.mark.asyncio
async def test_same_order_for_other_merchant_is_new_payment(repository, cache):
    svc = _service(repository, cache)
    a = await svc.create_payment(_request(merchant_id="M1"))
    b = await svc.create_payment(_request(merchant_id="M2"))
    assert a.id != b.id


@pytest.mark.asyncio
async def test_create_rejects_unsupported_currency_and_method(repository, cache):
    svc = _service(repository, cache)
    with pytest.raises(UnsupportedCurrencyException):
        await svc.create_payment(_request(currency="JPY"))
    with pytest.raises(UnsupportedMethodException):
        await svc.create_payment(_request(method="cheque"))
    assert await repository.list(_filter()) == []


def test_create_request_rejects_sub_cent_amount():
    with pytest.raises(ValidationError):
        _request(amount=Decimal("0.001"))
    with pytest.raises(ValidationError):
        _request(amount=Decimal("10.005"))
    assert _request(amount=Decimal("10.5")).amount == Decimal("10.50")


@pytest.mark.asyncio
async def test_create_notifies(repository, cache):
    notifier = RecordingNotifier()
    svc = _service(repository, cache, notifier=notifier)
    payment = await svc.create_payment(_request())
    await svc.wait_for_notifications()
    assert notifier.events == [(payment.id, PaymentEvent.CREATED, PaymentStatus.PENDING)]


# ---- process ----

@pytest.mark.asyncio
async def test_process_happy_path_then_second_process_rejected(repository, cache):
    processor = RecordingProcessor(ref="ch_123")
    notifier = RecordingNotifier()
    svc = _service(repository, cache, processor, notifier)
    created = await svc.create_payment(_request())

    done = await svc.process_payment(created.id, {"token": "tok"})
    assert done.status == PaymentStatus.COMPLETED
    assert done.processor_ref == "ch_123"
    assert done.processed_at is not None

    with pytest.raises(InvalidStateTransitionException):
        await svc.process_payment(created.id)
    assert processor.process_calls == 1

    stored = await repository.get_by_id(created.id)
    assert stored.status == PaymentStatus.COMPLETED
    assert [e.to_status for e in stored.ledger] == [
        PaymentStatus.PENDING,
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
    ]
    await svc.wait_for_notifications()
    assert [e[1] for e in notifier.events] == [PaymentEvent.CREATED, PaymentEvent.PROCESSED]


@pytest.mark.asyncio
async def test_concurrent_process_reaches_processor_once(repository, cache):
    processor = RecordingProcessor(delay=0.05)
    svc = _service(repository, cache, processor)
    created = await svc.create_payment(_request())

    n = 8
    results = await asyncio.gather(
        *(svc.process_payment(created.id) for _ in range(n)),
        return_exceptions=True,
    )
    completed = [r for r in results if not isinstance(r, Exception)]
    busy = [r for r in results if isinstance(r, AlreadyInProgressException)]
    assert processor.process_calls == 1
    assert len(completed) == 1
    assert len(busy) == n - 1


@pytest.mark.asyncio
async def test_concurrent_process_across_instances(repository, cache):
    processor = RecordingProcessor(delay=0.05)
    services = [_service(repository, cache.sibling(), processor) for _ in range(4)]
    created = await services[0].create_payment(_request())
    results = await asyncio.gather(
        *(s.process_payment(created.id) for s in services),
        return_exceptions=True,
    )
    assert processor.process_calls == 1
    assert sum(isinstance(r, AlreadyInProgressException) for r in results) == 3


@pytest.mark.asyncio
async def test_process_unknown_payment(repository, cache):
    svc = _service(repository, cache)
    with pytest.raises(PaymentNotFoundException):
        await svc.process_payment("missing")


@pytest.mark.asyncio
async def test_processor_failure_marks_failed_and_releases_lock(repository, cache):
    processor = RecordingProcessor(fail=True)
    notifier = RecordingNotifier()
    svc = _service(repository, cache, processor, notifier)
    created = await svc.create_payment(_request())

    with pytest.raises(ExternalProcessorException) as exc:
        await svc.process_payment(created.id)
    assert exc.value.payment_id == created.id

    stored = await repository.get_by_id(created.id)
    assert stored.status == PaymentStatus.FAILED
    assert "card declined" in stored.failure_reason
    assert await cache.acquire_lock(payment_lock_key(created.id), 1) is not None

    await svc.wait_for_notifications()
    assert notifier.events[-1][1] == PaymentEvent.FAILED


@pytest.mark.asyncio
async def test_process_rate_limited_per_merchant(repository, cache):
    processor = RecordingProcessor()
    svc = _service(repository, cache, processor, limit=1)
    p1 = await svc.create_payment(_request(order_id="O1"))
    p2 = await svc.create_payment(_request(order_id="O2"))
    await svc.process_payment(p1.id)
    with pytest.raises(RateLimitedException) as exc:
        await svc.process_payment(p2.id)
    assert exc.value.retry_after > 0
    assert processor.process_calls == 1
    assert (await repository.get_by_id(p2.id)).status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_lock_backend_outage_denies_processing(repository):
    class NoLockCache(InMemoryCache):
        async def acquire_lock(self, key, ttl):
            raise CacheUnavailableError("redis timeout")

    processor = RecordingProcessor()
    svc = _service(repository, NoLockCache(), processor)
    created = await repository.create(
        Payment.create(client_id="C1", merchant_id="M9", order_id="O9", amount="1.00", currency="USD", method="card")
    )
    with pytest.raises(InternalServiceException):
        await svc.process_payment(created.id)
    assert processor.process_calls == 0
    assert (await repository.get_by_id(created.id)).status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_notifier_failure_does_not_fail_call(repository, cache):
    svc = _service(repository, cache, notifier=RecordingNotifier(fail=True))
    created = await svc.create_payment(_request())
    done = await svc.process_payment(created.id)
    await svc.wait_for_notifications()
    assert done.status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_storage_failure_after_processor_is_internal_error(repository, cache):
    svc = _service(repository, cache)
    created = await svc.create_payment(_request())
    original_update = repository.update
    calls = {"n": 0}

    async def flaky_update(payment):
        calls["n"] += 1
        if payment.status == PaymentStatus.COMPLETED:
            raise RepositoryError("connection reset")
        return await original_update(payment)

    repository.update = flaky_update
    with pytest.raises(InternalServiceException):
        await svc.process_payment(created.id)
    # stuck in processing until an operator or the TTL window resolves it
    assert (await repository.get_by_id(created.id)).status == PaymentStatus.PROCESSING
    assert await cache.acquire_lock(payment_lock_key(created.id), 1) is not None


# ---- refund ----

@pytest.mark.asyncio
async def test_refund_partial_then_full(repository, cache):
    notifier = RecordingNotifier()
    svc = _service(repository, cache, notifier=notifier)
    created = await svc.create_payment(_request())
    await svc.process_payment(created.id)

    partial = await svc.refund_payment(created.id, Decimal("40.00"), reason="damaged")
    assert partial.status == PaymentStatus.PARTIALLY_REFUNDED
    assert partial.remaining_refundable() == Decimal("60.00")

    full = await svc.refund_payment(created.id, "60.00")
    assert full.status == PaymentStatus.REFUNDED
    stored = await repository.get_by_id(created.id)
    assert sum(r.amount for r in stored.refunds) == Decimal("100.00")
    await svc.wait_for_notifications()
    assert [e[1] for e in notifier.events].count(PaymentEvent.REFUNDED) == 2


@pytest.mark.asyncio
async def test_refund_exceeding_remaining_never_calls_processor(repository, cache):
    processor = RecordingProcessor()
    svc = _service(repository, cache, processor)
    created = await svc.create_payment(_request())
    await svc.process_payment(created.id)
    await svc.refund_payment(created.id, "90.00")

    with pytest.raises(RefundExceedsRemainingException):
        await svc.refund_payment(created.id, "10.01")
    assert processor.refund_calls == 1
    stored = await repository.get_by_id(created.id)
    assert stored.refunded_amount == Decimal("90.00")


@pytest.mark.asyncio
async def test_refund_requires_completed_payment(repository, cache):
    svc = _service(repository, cache)
    created = await svc.create_payment(_request())
    with pytest.raises(InvalidStateTransitionException):
        await svc.refund_payment(created.id, "1.00")


@pytest.mark.asyncio
async def test_refund_processor_failure_leaves_payment_unchanged(repository, cache):
    processor = RecordingProcessor(refund_fail=True)
    svc = _service(repository, cache, processor)
    created = await svc.create_payment(_request())
    await svc.process_payment(created.id)
    before = await repository.get_by_id(created.id)

    with pytest.raises(ExternalProcessorException):
        await svc.refund_payment(created.id, "10.00")
    after = await repository.get_by_id(created.id)
    assert after.status == PaymentStatus.COMPLETED
    assert after.refunded_amount == Decimal("0")
    assert after.pending_refund_amount is None
    assert after.ledger == before.ledger

    # the payment can still be refunded once the processor recovers
    processor.refund_fail = False
    done = await svc.refund_payment(created.id, "10.00")
    assert done.refunded_amount == Decimal("10.00")


@pytest.mark.asyncio
async def test_refund_storage_failure_blocks_second_refund(repository, cache):
    processor = RecordingProcessor()
    svc = _service(repository, cache, processor)
    created = await svc.create_payment(_request())
    await svc.process_payment(created.id)

    original_update = repository.update

    async def failing_confirm(payment):
        if payment.refunds:
            raise RepositoryError("connection reset")
        return await original_update(payment)

    repository.update = failing_confirm
    with pytest.raises(InternalServiceException):
        await svc.refund_payment(created.id, "60.00")

    stored = await repository.get_by_id(created.id)
    assert stored.status == PaymentStatus.COMPLETED
    assert stored.pending_refund_amount == Decimal("60.00")

    repository.update = original_update
    with pytest.raises(RefundInProgressException):
        await svc.refund_payment(created.id, "60.00")
    assert processor.refund_calls == 1
    assert (await repository.get_by_id(created.id)).refunded_amount == Decimal("0")


@pytest.mark.asyncio
async def test_process_refuses_to_persist_after_lock_lost(repository, cache):
    key_owner = cache.sibling()

    class LockStealingProcessor(RecordingProcessor):
        async def process(self, payment, details):
            key = payment_lock_key(payment.id)
            await cache.delete(key)
            assert await key_owner.acquire_lock(key, 30) is not None
            await asyncio.sleep(0.5)
            return await super().process(payment, details)

    processor = LockStealingProcessor()
    router = ProcessorRouter({PaymentMethod.CARD: processor}, timeout_seconds=2)
    lock = DistributedLock(cache, auto_renew=True, interval_ratio=0.01, jitter_ratio=0.0)
    svc = PaymentService(repository, cache, router, settings=_settings(), lock=lock)
    created = await svc.create_payment(_request())

    with pytest.raises(InternalServiceException):
        await svc.process_payment(created.id)
    stored = await repository.get_by_id(created.id)
    assert stored.status == PaymentStatus.PROCESSING
    assert stored.processor_ref is None
    # the new owner's lock survives the old holder's exit
    assert await cache.acquire_lock(payment_lock_key(created.id), 1) is None


@pytest.mark.asyncio
async def test_notification_uses_state_at_scheduling_time(repository, cache):
    seen = []

    class SnapshotNotifier(RecordingNotifier):
        async def notify_status_change(self, payment, event, metadata=None):
            seen.append(payment.to_dict())

    svc = _service(repository, cache, notifier=SnapshotNotifier())
    created = await svc.create_payment(_request(metadata={"cart": "1"}))
    created.metadata["cart"] = "tampered"
    created.description = "changed by caller"
    await svc.wait_for_notifications()

    assert seen[0]["metadata"] == {"cart": "1"}
    assert seen[0]["description"] == ""


# ---- cancel ----

@pytest.mark.asyncio
async def test_cancel_pending_then_order_can_be_reused(repository, cache):
    svc = _service(repository, cache)
    created = await svc.create_payment(_request())
    cancelled = await svc.cancel_payment(created.id)
    assert cancelled.status == PaymentStatus.CANCELLED

    with pytest.raises(InvalidStateTransitionException):
        await svc.process_payment(created.id)

    again = await svc.create_payment(_request())
    assert again.id != created.id


@pytest.mark.asyncio
async def test_cancel_rejected_while_processing_lock_held(repository, cache):
    svc = _service(repository, cache)
    created = await svc.create_payment(_request())
    assert await cache.sibling().acquire_lock(payment_lock_key(created.id), 30)
    with pytest.raises(AlreadyInProgressException):
        await svc.cancel_payment(created.id)


# ---- reads ----

@pytest.mark.asyncio
async def test_get_payment_reads_through_cache_and_invalidates(repository, cache):
    svc = _service(repository, cache)
    created = await svc.create_payment(_request())

    first = await svc.get_payment(created.id)
    assert await cache.get(f"payment:{created.id}") is not None
    assert first.status == PaymentStatus.PENDING

    await svc.process_payment(created.id)
    assert await cache.get(f"payment:{created.id}") is None
    refreshed = await svc.get_payment(created.id)
    assert refreshed.status == PaymentStatus.COMPLETED
    assert len(refreshed.ledger) == 3


@pytest.mark.asyncio
async def test_get_payment_falls_back_when_cache_down(repository):
    class NoReadCache(InMemoryCache):
        async def get(self, key):
            raise CacheUnavailableError("redis timeout")

        async def set(self, key, value, ttl=None):
            raise CacheUnavailableError("redis timeout")

    svc = _service(repository, NoReadCache())
    created = await svc.create_payment(_request())
    fetched = await svc.get_payment(created.id)
    assert fetched.id == created.id


@pytest.mark.asyncio
async def test_get_payment_not_found(repository, cache):
    svc = _service(repository, cache)
    with pytest.raises(PaymentNotFoundException):
        await svc.get_payment("nope")


@pytest.mark.asyncio
async def test_get_payment_by_order(repository, cache):
    svc = _service(repository, cache)
    created = await svc.create_payment(_request(order_id="O7"))
    found = await svc.get_payment_by_order("M1", "O7")
    assert found.id == created.id
    with pytest.raises(PaymentNotFoundException):
        await svc.get_payment_by_order("M1", "missing")


@pytest.mark.asyncio
async def test_list_payments_filters_and_limits(repository, cache):
    svc = _service(repository, cache)
    for i in range(3):
        await svc.create_payment(_request(order_id=f"A{i}", merchant_id="MA"))
    p = await svc.create_payment(_request(order_id="B0", merchant_id="MB"))
    await svc.process_payment(p.id)

    assert len(await svc.list_payments(ListPaymentsQuery(merchant_id="MA"))) == 3
    completed = await svc.list_payments(ListPaymentsQuery(status=PaymentStatus.COMPLETED))
    assert [x.id for x in completed] == [p.id]
    assert len(await svc.list_payments(ListPaymentsQuery(merchant_id="MA", limit=2))) == 2
    assert len(await svc.list_payments(ListPaymentsQuery(merchant_id="MA", offset=2))) == 1


def test_list_query_limit_defaults():
    assert ListPaymentsQuery(limit=0).limit == 50
    assert ListPaymentsQuery(limit=500).limit == 50
    assert ListPaymentsQuery(limit=100).limit == 100
    assert ListPaymentsQuery(offset=-5).offset == 0

"""
Application service orchestrating payment use-cases.

This class depends only on application ports (repository, cache, processor
router, notifier). Concrete adapters are provided by infrastructure and must
be injected from the composition root, keeping dependencies one-way.

Processing and refunding follow the same order:

    load -> state check -> rate limit -> lock -> re-load/re-check
         -> external call -> transition -> persist -> notify -> unlock
"""
from __future__ import annotations

import asyncio
import copy
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Set

from application.dtos.payments import CreatePaymentRequest, ListPaymentsQuery
from application.ports.cache import Cache, CacheUnavailableError
from application.ports.notifier import Notifier
from application.services.distributed_lock import DistributedLock, create_lock_key, payment_lock_key
from application.services.processor_router import ProcessorRouter
from application.services.rate_limiter import RateLimiter, merchant_subject
from core.logging_config import correlation_scope, get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.exceptions import InternalServiceException
from domain.payment.entity import (
    REFUNDABLE_STATUSES,
    SYSTEM_ACTOR,
    Payment,
    PaymentStatus,
    to_decimal,
)
from domain.payment.events import PaymentEvent
from domain.payment.exceptions import (
    AlreadyInProgressException,
    ExternalProcessorException,
    InvalidStateTransitionException,
    PaymentNotFoundException,
)
from domain.payment.repository import (
    DuplicatePaymentError,
    PaymentFilter,
    PaymentRepository,
    RepositoryError,
)


logger = get_logger(__name__)

_CREATE_POLL_INTERVAL = 0.05


def _cache_key(payment_id: str) -> str:
    return f"payment:{payment_id}"


class PaymentService:
    def __init__(
        self,
        repository: PaymentRepository,
        cache: Cache,
        router: ProcessorRouter,
        notifier: Optional[Notifier] = None,
        *,
        settings: Optional[PaymentSettings] = None,
        lock: Optional[DistributedLock] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self._settings = settings or payment_settings
        self._repo = repository
        self._cache = cache
        self._router = router
        self._notifier = notifier
        self._lock = lock or DistributedLock(
            cache,
            auto_renew=self._settings.lock.auto_renew,
            interval_ratio=self._settings.lock.auto_renew_interval_ratio,
            jitter_ratio=self._settings.lock.auto_renew_jitter_ratio,
        )
        self._limiter = rate_limiter or RateLimiter(
            cache,
            limit=self._settings.rate_limit.limit,
            window_seconds=self._settings.rate_limit.window_seconds,
        )
        self._pending_notifications: Set[asyncio.Task] = set()

    # ============= 写操作 =============

    async def create_payment(self, req: CreatePaymentRequest, actor: str = SYSTEM_ACTOR) -> Payment:
        """创建支付；同一 (merchant_id, order_id) 重复创建返回已有支付"""
        with correlation_scope("create_payment", merchant_id=req.merchant_id, order_id=req.order_id):
            # 先校验，再做任何远程调用
            candidate = Payment.create(
                client_id=req.client_id,
                merchant_id=req.merchant_id,
                order_id=req.order_id,
                amount=req.amount,
                currency=req.currency,
                method=req.method,
                description=req.description,
                metadata=req.metadata,
                actor=actor,
            )

            existing = await self._find_by_order(req.merchant_id, req.order_id)
            if existing is not None:
                logger.info("payment_create_deduplicated", payment_id=existing.id)
                return existing

            key = create_lock_key(req.merchant_id, req.order_id)
            ttl = self._settings.lock.create_ttl_seconds
            token = await self._lock.try_acquire(key, ttl)
            if token is None:
                return await self._await_concurrent_create(req.merchant_id, req.order_id, ttl)

            try:
                existing = await self._find_by_order(req.merchant_id, req.order_id)
                if existing is not None:
                    logger.info("payment_create_deduplicated", payment_id=existing.id)
                    return existing
                try:
                    payment = await self._repo.create(candidate)
                except DuplicatePaymentError:
                    winner = await self._find_by_order(req.merchant_id, req.order_id)
                    if winner is None:
                        raise InternalServiceException("Duplicate payment could not be resolved")
                    logger.info("payment_create_conflict_resolved", payment_id=winner.id)
                    return winner
                except RepositoryError as e:
                    logger.error("payment_store_failed", op="create", error=str(e), exc_info=True)
                    raise InternalServiceException("Failed to persist payment") from e
            finally:
                await self._lock.release(key, token)

            logger.info(
                "payment_created",
                payment_id=payment.id,
                amount=str(payment.amount),
                currency=payment.currency.value,
                method=payment.method.value,
            )
            self._notify(payment, PaymentEvent.CREATED)
            return payment

    async def process_payment(
        self,
        payment_id: str,
        details: Optional[Mapping[str, Any]] = None,
        actor: str = SYSTEM_ACTOR,
    ) -> Payment:
        """处理支付：全系统同一时刻至多一次外部调用"""
        with correlation_scope("process_payment", payment_id=payment_id):
            payment = await self._load(payment_id)
            self._ensure_processable(payment)
            self._router.resolve(payment.method)
            await self._limiter.check(merchant_subject(payment.merchant_id))

            async with self._lock.hold(payment_lock_key(payment_id), self._settings.lock.ttl_seconds) as lease:
                # 等锁期间可能已被其他实例处理完
                payment = await self._load(payment_id)
                self._ensure_processable(payment)

                payment.mark_processing(actor)
                await self._save(payment)

                try:
                    result = await self._router.process(payment, details)
                except ExternalProcessorException as e:
                    lease.ensure_held()
                    payment.mark_failed(e.message, actor)
                    await self._save(payment)
                    logger.warning("payment_failed", payment_id=payment.id, reason=e.message)
                    self._notify(payment, PaymentEvent.FAILED)
                    raise

                lease.ensure_held()
                payment.mark_completed(result.processor_ref, actor)
                if result.metadata:
                    payment.metadata["processor"] = dict(result.metadata)
                await self._save(payment)

            logger.info("payment_processed", payment_id=payment.id, processor_ref=payment.processor_ref)
            self._notify(payment, PaymentEvent.PROCESSED)
            return payment

    async def refund_payment(
        self,
        payment_id: str,
        amount: Any,
        reason: Optional[str] = None,
        actor: str = SYSTEM_ACTOR,
    ) -> Payment:
        """退款（全额或部分）；处理方失败时支付保持不变

        调用处理方前先落库退款标记（pending_refund_amount）。若处理方成功而
        结果写入失败，标记保留，后续退款被拒绝，直到人工对账解除。
        """
        with correlation_scope("refund_payment", payment_id=payment_id):
            refund_amount = to_decimal(amount)
            payment = await self._load(payment_id)
            self._ensure_refundable(payment, refund_amount)
            await self._limiter.check(merchant_subject(payment.merchant_id))

            async with self._lock.hold(payment_lock_key(payment_id), self._settings.lock.ttl_seconds) as lease:
                payment = await self._load(payment_id)
                self._ensure_refundable(payment, refund_amount)

                payment.begin_refund(refund_amount)
                await self._save(payment)

                try:
                    result = await self._router.refund(payment, refund_amount, reason)
                except ExternalProcessorException:
                    lease.ensure_held()
                    payment.abort_refund()
                    await self._save(payment)
                    raise

                lease.ensure_held()
                refund = payment.mark_refunded(refund_amount, result.refund_ref, reason, actor)
                await self._save(payment)

            logger.info(
                "payment_refunded",
                payment_id=payment.id,
                refund_id=refund.id,
                amount=str(refund_amount),
                status=payment.status.value,
            )
            self._notify(
                payment,
                PaymentEvent.REFUNDED,
                {"refund_id": refund.id, "refund_amount": str(refund_amount), "refund_ref": refund.refund_ref},
            )
            return payment

    async def cancel_payment(self, payment_id: str, actor: str = SYSTEM_ACTOR) -> Payment:
        """取消支付（仅 pending）；持有支付锁，避免与处理并发"""
        with correlation_scope("cancel_payment", payment_id=payment_id):
            payment = await self._load(payment_id)
            if payment.status != PaymentStatus.PENDING:
                raise InvalidStateTransitionException(payment.id, payment.status.value, PaymentStatus.CANCELLED.value)

            async with self._lock.hold(payment_lock_key(payment_id), self._settings.lock.ttl_seconds):
                payment = await self._load(payment_id)
                payment.mark_cancelled(actor)
                await self._save(payment)

            logger.info("payment_cancelled", payment_id=payment.id)
            self._notify(payment, PaymentEvent.CANCELLED)
            return payment

    # ============= 读操作（无锁） =============

    async def get_payment(self, payment_id: str) -> Payment:
        """读取支付；读缓存失败时回源仓储"""
        read_cache = self._settings.read_cache
        if read_cache.enabled:
            cached = await self._cache_get(payment_id)
            if cached is not None:
                return cached

        payment = await self._load(payment_id)
        if read_cache.enabled:
            await self._cache_set(payment, read_cache.ttl_seconds)
        return payment

    async def get_payment_by_order(self, merchant_id: str, order_id: str) -> Payment:
        payment = await self._find_by_order(merchant_id, order_id)
        if payment is None:
            raise PaymentNotFoundException(f"{merchant_id}:{order_id}")
        return payment

    async def list_payments(self, query: Optional[ListPaymentsQuery] = None) -> List[Payment]:
        query = query or ListPaymentsQuery()
        flt = PaymentFilter(
            client_id=query.client_id,
            merchant_id=query.merchant_id,
            status=query.status,
            limit=query.limit,
            offset=query.offset,
        )
        try:
            return await self._repo.list(flt)
        except RepositoryError as e:
            logger.error("payment_store_failed", op="list", error=str(e), exc_info=True)
            raise InternalServiceException("Failed to list payments") from e

    # ============= 生命周期 =============

    async def wait_for_notifications(self) -> None:
        """等待已调度的通知任务结束（关闭前或测试中使用）"""
        if self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)

    async def aclose(self) -> None:
        await self.wait_for_notifications()
        if self._notifier is not None:
            await self._notifier.aclose()

    # ============= 内部方法 =============

    @staticmethod
    def _ensure_processable(payment: Payment) -> None:
        if not payment.can_be_processed():
            raise InvalidStateTransitionException(payment.id, payment.status.value, PaymentStatus.PROCESSING.value)

    @staticmethod
    def _ensure_refundable(payment: Payment, amount: Decimal) -> None:
        if payment.status not in REFUNDABLE_STATUSES:
            raise InvalidStateTransitionException(payment.id, payment.status.value, PaymentStatus.REFUNDED.value)
        payment.ensure_no_pending_refund()
        payment.ensure_refundable_amount(amount)

    async def _load(self, payment_id: str) -> Payment:
        try:
            payment = await self._repo.get_by_id(payment_id)
        except RepositoryError as e:
            logger.error("payment_store_failed", op="get", payment_id=payment_id, error=str(e), exc_info=True)
            raise InternalServiceException("Failed to load payment") from e
        if payment is None:
            raise PaymentNotFoundException(payment_id)
        return payment

    async def _find_by_order(self, merchant_id: str, order_id: str) -> Optional[Payment]:
        try:
            return await self._repo.get_by_merchant_and_order(merchant_id, order_id)
        except RepositoryError as e:
            logger.error("payment_store_failed", op="get_by_order", error=str(e), exc_info=True)
            raise InternalServiceException("Failed to load payment") from e

    async def _save(self, payment: Payment) -> None:
        try:
            await self._repo.update(payment)
        except RepositoryError as e:
            logger.error(
                "payment_store_failed",
                op="update",
                payment_id=payment.id,
                status=payment.status.value,
                error=str(e),
                exc_info=True,
            )
            raise InternalServiceException("Failed to persist payment", details={"payment_id": payment.id}) from e
        finally:
            await self._cache_invalidate(payment.id)

    async def _await_concurrent_create(self, merchant_id: str, order_id: str, ttl: float) -> Payment:
        """另一实例正在创建同一订单的支付：轮询直到对方落库"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + ttl
        while loop.time() < deadline:
            await asyncio.sleep(_CREATE_POLL_INTERVAL)
            winner = await self._find_by_order(merchant_id, order_id)
            if winner is not None:
                logger.info("payment_create_deduplicated", payment_id=winner.id)
                return winner
        raise AlreadyInProgressException(f"{merchant_id}:{order_id}")

    async def _cache_get(self, payment_id: str) -> Optional[Payment]:
        try:
            data = await self._cache.get(_cache_key(payment_id))
        except CacheUnavailableError as e:
            logger.warning("payment_cache_unavailable", payment_id=payment_id, error=str(e))
            return None
        if not data:
            return None
        try:
            return Payment.from_snapshot(data)
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            logger.warning("payment_cache_corrupted", payment_id=payment_id, error=str(e))
            return None

    async def _cache_set(self, payment: Payment, ttl: int) -> None:
        try:
            await self._cache.set(_cache_key(payment.id), payment.snapshot(), ttl=ttl)
        except CacheUnavailableError as e:
            logger.warning("payment_cache_unavailable", payment_id=payment.id, error=str(e))

    async def _cache_invalidate(self, payment_id: str) -> None:
        if not self._settings.read_cache.enabled:
            return
        try:
            await self._cache.delete(_cache_key(payment_id))
        except CacheUnavailableError as e:
            logger.warning("payment_cache_unavailable", payment_id=payment_id, error=str(e))

    def _notify(self, payment: Payment, event: PaymentEvent, metadata: Optional[dict] = None) -> None:
        """异步尽力通知，不阻塞也不影响调用结果

        通知使用调度时的副本，调用方之后修改返回值不会影响通知内容。
        """
        if self._notifier is None:
            return
        task = asyncio.create_task(self._deliver(copy.deepcopy(payment), event, copy.deepcopy(metadata)))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _deliver(self, payment: Payment, event: PaymentEvent, metadata: Optional[dict]) -> None:
        try:
            await self._notifier.notify_status_change(payment, event, metadata)
        except Exception as e:
            logger.error(
                "payment_notification_failed",
                payment_id=payment.id,
                event=event.value,
                error=str(e),
                exc_info=True,
            )

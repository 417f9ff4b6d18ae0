"""
内存支付仓储 - 单进程使用（本地开发与测试）

读写都做深拷贝，调用方拿到的实体与存储互不影响，行为与数据库实现一致。
"""
from __future__ import annotations

import asyncio
import copy
from typing import Dict, List, Optional

from domain.payment.entity import Payment, PaymentStatus
from domain.payment.repository import (
    DuplicatePaymentError,
    PaymentFilter,
    PaymentRepository,
    RepositoryError,
)


class InMemoryPaymentRepository(PaymentRepository):
    def __init__(self) -> None:
        self._payments: Dict[str, Payment] = {}
        self._lock = asyncio.Lock()

    def _active_for_order(self, merchant_id: str, order_id: str) -> Optional[Payment]:
        for payment in self._payments.values():
            if (
                payment.merchant_id == merchant_id
                and payment.order_id == order_id
                and payment.status != PaymentStatus.CANCELLED
            ):
                return payment
        return None

    async def create(self, payment: Payment) -> Payment:
        async with self._lock:
            if self._active_for_order(payment.merchant_id, payment.order_id) is not None:
                raise DuplicatePaymentError(payment.merchant_id, payment.order_id)
            self._payments[payment.id] = copy.deepcopy(payment)
        return copy.deepcopy(payment)

    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        # 让出一次事件循环，模拟远程存储的 IO
        await asyncio.sleep(0)
        payment = self._payments.get(payment_id)
        return copy.deepcopy(payment) if payment else None

    async def get_by_merchant_and_order(self, merchant_id: str, order_id: str) -> Optional[Payment]:
        await asyncio.sleep(0)
        payment = self._active_for_order(merchant_id, order_id)
        return copy.deepcopy(payment) if payment else None

    async def update(self, payment: Payment) -> Payment:
        async with self._lock:
            stored = self._payments.get(payment.id)
            if stored is None:
                raise RepositoryError(f"Payment with id {payment.id} not found")
            # 台账与退款只追加：已有记录必须保持不变
            if payment.ledger[: len(stored.ledger)] != stored.ledger:
                raise RepositoryError(f"Ledger history of payment {payment.id} was rewritten")
            if payment.refunds[: len(stored.refunds)] != stored.refunds:
                raise RepositoryError(f"Refund history of payment {payment.id} was rewritten")
            self._payments[payment.id] = copy.deepcopy(payment)
        return copy.deepcopy(payment)

    async def list(self, filter: PaymentFilter) -> List[Payment]:
        await asyncio.sleep(0)
        items = [
            p for p in self._payments.values()
            if (not filter.client_id or p.client_id == filter.client_id)
            and (not filter.merchant_id or p.merchant_id == filter.merchant_id)
            and (not filter.status or p.status == PaymentStatus(filter.status))
        ]
        items.sort(key=lambda p: p.created_at, reverse=True)
        return [copy.deepcopy(p) for p in items[filter.offset: filter.offset + filter.limit]]

"""
支付领域实体 - 支付聚合根、台账条目与退款记录
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, List, Optional

from domain.common.exceptions import DomainValidationException
from domain.payment.exceptions import (
    InvalidStateTransitionException,
    ProcessorRefImmutableException,
    RefundExceedsRemainingException,
    RefundInProgressException,
    UnsupportedCurrencyException,
    UnsupportedMethodException,
)


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"                        # 待处理
    PROCESSING = "processing"                  # 处理中（受分布式锁保护的瞬态）
    COMPLETED = "completed"                    # 支付成功
    FAILED = "failed"                          # 支付失败
    PARTIALLY_REFUNDED = "partially_refunded"  # 部分退款
    REFUNDED = "refunded"                      # 已全额退款
    CANCELLED = "cancelled"                    # 已取消


class PaymentMethod(str, Enum):
    """支付方式（创建后不可变）"""
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    WALLET = "wallet"
    CRYPTO = "crypto"


class Currency(str, Enum):
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"


TERMINAL_STATUSES = frozenset({
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.REFUNDED,
    PaymentStatus.CANCELLED,
})

REFUNDABLE_STATUSES = frozenset({PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED})

SYSTEM_ACTOR = "system"

# 金额精度与存储列 Numeric(15, 2) 一致
CENT = Decimal("0.01")
MAX_AMOUNT = Decimal("9999999999999.99")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_decimal(value: Any, *, field_name: str = "amount") -> Decimal:
    """金额统一转换为 Decimal；float 先转字符串以避免二进制误差"""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise DomainValidationException(f"Invalid {field_name}: {value!r}", field=field_name)
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation:
            raise DomainValidationException(f"Invalid {field_name}: {value!r}", field=field_name)
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        raise DomainValidationException(f"Invalid {field_name}: {value!r}", field=field_name)
    if not result.is_finite():
        raise DomainValidationException(f"Invalid {field_name}: {value!r}", field=field_name)
    if abs(result) > MAX_AMOUNT:
        raise DomainValidationException(f"{field_name} exceeds {MAX_AMOUNT}: {value!r}", field=field_name)
    quantized = result.quantize(CENT)
    if quantized != result:
        raise DomainValidationException(
            f"{field_name} supports at most 2 decimal places: {value!r}",
            field=field_name,
        )
    return quantized


def parse_currency(value: Any) -> Currency:
    if isinstance(value, Currency):
        return value
    try:
        return Currency(str(value or "").upper())
    except ValueError:
        raise UnsupportedCurrencyException(str(value))


def parse_method(value: Any) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(str(value or "").lower())
    except ValueError:
        raise UnsupportedMethodException(str(value))


@dataclass(frozen=True)
class LedgerEntry:
    """台账条目 - 只追加，不修改不删除"""

    payment_id: str
    from_status: Optional[PaymentStatus]
    to_status: PaymentStatus
    amount: Decimal
    actor: str = SYSTEM_ACTOR
    created_at: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class Refund:
    """退款记录 - Payment 聚合的一部分，只记录成功的退款"""

    payment_id: str
    amount: Decimal
    reason: Optional[str]
    refund_ref: str
    created_at: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class Payment:
    """
    支付聚合根 - 管理支付生命周期

    业务规则：
    1. (merchant_id, order_id) 最多对应一笔未取消的支付
    2. 金额必须大于0，全程使用 Decimal
    3. 状态转换必须遵循状态机，非法转换不产生任何修改
    4. processor_ref 只能写入一次
    5. 累计退款金额不能超过支付金额
    6. 每次状态变化追加一条台账记录
    """

    id: str
    client_id: str
    merchant_id: str
    order_id: str
    amount: Decimal
    currency: Currency
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    description: str = ""
    metadata: dict = field(default_factory=dict)

    processor_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    refunded_amount: Decimal = field(default_factory=lambda: Decimal("0"))
    # 已提交处理方、尚未确认落库的退款金额；非空时拒绝新的退款
    pending_refund_amount: Optional[Decimal] = None

    # 时间戳
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    ledger: List[LedgerEntry] = field(default_factory=list)
    refunds: List[Refund] = field(default_factory=list)

    def __post_init__(self):
        """初始化后验证"""
        self.amount = to_decimal(self.amount)
        self.refunded_amount = to_decimal(self.refunded_amount, field_name="refunded_amount")
        if self.pending_refund_amount is not None:
            self.pending_refund_amount = to_decimal(self.pending_refund_amount, field_name="pending_refund_amount")
        self._validate_amount()
        self.currency = parse_currency(self.currency)
        self.method = parse_method(self.method)
        self.status = PaymentStatus(self.status)
        if self.metadata is None:
            self.metadata = {}
        self.created_at = ensure_utc(self.created_at) or _utcnow()
        self.updated_at = ensure_utc(self.updated_at) or self.created_at
        self.processed_at = ensure_utc(self.processed_at)
        self.cancelled_at = ensure_utc(self.cancelled_at)

    @classmethod
    def create(
        cls,
        *,
        client_id: str,
        merchant_id: str,
        order_id: str,
        amount: Any,
        currency: Any,
        method: Any,
        description: str = "",
        metadata: Optional[dict] = None,
        actor: str = SYSTEM_ACTOR,
    ) -> "Payment":
        """创建一笔待处理支付，并写入创建台账"""
        now = _utcnow()
        payment = cls(
            id=str(uuid.uuid4()),
            client_id=client_id,
            merchant_id=merchant_id,
            order_id=order_id,
            amount=amount,
            currency=currency,
            method=method,
            status=PaymentStatus.PENDING,
            description=description or "",
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        payment._append_ledger(None, PaymentStatus.PENDING, payment.amount, actor, now)
        return payment

    def _validate_amount(self) -> None:
        """业务规则：金额必须大于0"""
        if self.amount <= 0:
            raise DomainValidationException(
                f"Payment amount must be greater than 0: {self.amount}",
                field="amount",
            )
        if self.refunded_amount < 0 or self.refunded_amount > self.amount:
            raise DomainValidationException(
                f"Refunded amount out of range: {self.refunded_amount}",
                field="refunded_amount",
            )

    def _append_ledger(
        self,
        from_status: Optional[PaymentStatus],
        to_status: PaymentStatus,
        amount: Decimal,
        actor: str,
        at: datetime,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            payment_id=self.id,
            from_status=from_status,
            to_status=to_status,
            amount=amount,
            actor=actor,
            created_at=at,
        )
        self.ledger.append(entry)
        return entry

    def _guard(self, allowed: Iterable[PaymentStatus], target: PaymentStatus) -> None:
        if self.status not in allowed:
            raise InvalidStateTransitionException(self.id, self.status.value, target.value)

    def _transition(self, target: PaymentStatus, amount: Decimal, actor: str) -> datetime:
        now = _utcnow()
        self._append_ledger(self.status, target, amount, actor, now)
        self.status = target
        self.updated_at = now
        return now

    # ---- 状态机 ----

    def mark_processing(self, actor: str = SYSTEM_ACTOR) -> None:
        """pending -> processing"""
        self._guard((PaymentStatus.PENDING,), PaymentStatus.PROCESSING)
        self._transition(PaymentStatus.PROCESSING, self.amount, actor)

    def mark_completed(self, processor_ref: str, actor: str = SYSTEM_ACTOR) -> None:
        """
        processing -> completed

        业务规则：processor_ref 必须非空且只能写入一次
        """
        self._guard((PaymentStatus.PROCESSING,), PaymentStatus.COMPLETED)
        if not processor_ref:
            raise DomainValidationException("Processor reference is required", field="processor_ref")
        if self.processor_ref and self.processor_ref != processor_ref:
            raise ProcessorRefImmutableException(self.id, self.processor_ref)
        now = self._transition(PaymentStatus.COMPLETED, self.amount, actor)
        self.processor_ref = processor_ref
        self.processed_at = now
        self.failure_reason = None

    def mark_failed(self, reason: Optional[str], actor: str = SYSTEM_ACTOR) -> None:
        """processing -> failed"""
        self._guard((PaymentStatus.PROCESSING,), PaymentStatus.FAILED)
        self._transition(PaymentStatus.FAILED, self.amount, actor)
        self.failure_reason = reason or "unknown processor error"

    def begin_refund(self, amount: Any) -> Decimal:
        """
        登记一笔即将提交给处理方的退款（状态不变）

        标记落库后才能调用处理方；标记未解除前拒绝新的退款，
        避免存储失败后重试造成重复退款。
        """
        refund_amount = to_decimal(amount)
        self._guard(REFUNDABLE_STATUSES, PaymentStatus.REFUNDED)
        self.ensure_no_pending_refund()
        self.ensure_refundable_amount(refund_amount)
        self.pending_refund_amount = refund_amount
        self.updated_at = _utcnow()
        return refund_amount

    def abort_refund(self) -> None:
        """处理方明确拒绝退款：解除标记"""
        self.pending_refund_amount = None
        self.updated_at = _utcnow()

    def mark_refunded(
        self,
        amount: Any,
        refund_ref: str,
        reason: Optional[str] = None,
        actor: str = SYSTEM_ACTOR,
    ) -> Refund:
        """
        completed / partially_refunded -> partially_refunded / refunded

        业务规则：
        1. 退款金额必须大于0
        2. 退款金额不能超过剩余可退金额
        3. 同时解除 begin_refund 登记的退款标记
        """
        refund_amount = to_decimal(amount)
        target = (
            PaymentStatus.REFUNDED
            if refund_amount == self.remaining_refundable()
            else PaymentStatus.PARTIALLY_REFUNDED
        )
        self._guard(REFUNDABLE_STATUSES, target)
        self.ensure_refundable_amount(refund_amount)

        now = self._transition(target, refund_amount, actor)
        self.refunded_amount += refund_amount
        self.pending_refund_amount = None
        refund = Refund(
            payment_id=self.id,
            amount=refund_amount,
            reason=reason,
            refund_ref=refund_ref,
            created_at=now,
        )
        self.refunds.append(refund)
        return refund

    def mark_cancelled(self, actor: str = SYSTEM_ACTOR) -> None:
        """pending -> cancelled（尚未调用处理方之前）"""
        self._guard((PaymentStatus.PENDING,), PaymentStatus.CANCELLED)
        self.cancelled_at = self._transition(PaymentStatus.CANCELLED, self.amount, actor)

    # ---- 查询 ----

    def remaining_refundable(self) -> Decimal:
        """计算剩余可退款金额"""
        return self.amount - self.refunded_amount

    def ensure_refundable_amount(self, amount: Decimal) -> None:
        if amount <= 0:
            raise DomainValidationException(
                f"Refund amount must be greater than 0: {amount}",
                field="amount",
            )
        remaining = self.remaining_refundable()
        if amount > remaining:
            raise RefundExceedsRemainingException(amount, remaining)

    def ensure_no_pending_refund(self) -> None:
        if self.pending_refund_amount is not None:
            raise RefundInProgressException(self.id, self.pending_refund_amount)

    def can_be_processed(self) -> bool:
        return self.status == PaymentStatus.PENDING

    def can_be_refunded(self) -> bool:
        return (
            self.status in REFUNDABLE_STATUSES
            and self.pending_refund_amount is None
            and self.remaining_refundable() > 0
        )

    def is_terminal(self) -> bool:
        """检查是否为终态"""
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        """通知与缓存使用的扁平表示（金额序列化为字符串）"""
        return {
            "id": self.id,
            "client_id": self.client_id,
            "merchant_id": self.merchant_id,
            "order_id": self.order_id,
            "amount": str(self.amount),
            "currency": self.currency.value,
            "method": self.method.value,
            "status": self.status.value,
            "description": self.description,
            "metadata": dict(self.metadata),
            "processor_ref": self.processor_ref,
            "failure_reason": self.failure_reason,
            "refunded_amount": str(self.refunded_amount),
            "pending_refund_amount": (
                str(self.pending_refund_amount) if self.pending_refund_amount is not None else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }

    def snapshot(self) -> dict:
        """完整快照（含台账与退款），用于读缓存"""
        data = self.to_dict()
        data["ledger"] = [
            {
                "id": e.id,
                "from_status": e.from_status.value if e.from_status else None,
                "to_status": e.to_status.value,
                "amount": str(e.amount),
                "actor": e.actor,
                "created_at": e.created_at.isoformat(),
            }
            for e in self.ledger
        ]
        data["refunds"] = [
            {
                "id": r.id,
                "amount": str(r.amount),
                "reason": r.reason,
                "refund_ref": r.refund_ref,
                "created_at": r.created_at.isoformat(),
            }
            for r in self.refunds
        ]
        return data

    @classmethod
    def from_snapshot(cls, data: dict) -> "Payment":
        """从 snapshot() 的结果重建聚合"""
        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        payment = cls(
            id=data["id"],
            client_id=data["client_id"],
            merchant_id=data["merchant_id"],
            order_id=data["order_id"],
            amount=Decimal(data["amount"]),
            currency=data["currency"],
            method=data["method"],
            status=PaymentStatus(data["status"]),
            description=data.get("description") or "",
            metadata=data.get("metadata") or {},
            processor_ref=data.get("processor_ref"),
            failure_reason=data.get("failure_reason"),
            refunded_amount=Decimal(data.get("refunded_amount") or "0"),
            pending_refund_amount=(
                Decimal(data["pending_refund_amount"]) if data.get("pending_refund_amount") else None
            ),
            created_at=_dt(data.get("created_at")),
            updated_at=_dt(data.get("updated_at")),
            processed_at=_dt(data.get("processed_at")),
            cancelled_at=_dt(data.get("cancelled_at")),
        )
        payment.ledger = [
            LedgerEntry(
                id=e["id"],
                payment_id=payment.id,
                from_status=PaymentStatus(e["from_status"]) if e.get("from_status") else None,
                to_status=PaymentStatus(e["to_status"]),
                amount=Decimal(e["amount"]),
                actor=e.get("actor") or SYSTEM_ACTOR,
                created_at=ensure_utc(_dt(e["created_at"])),
            )
            for e in data.get("ledger", [])
        ]
        payment.refunds = [
            Refund(
                id=r["id"],
                payment_id=payment.id,
                amount=Decimal(r["amount"]),
                reason=r.get("reason"),
                refund_ref=r["refund_ref"],
                created_at=ensure_utc(_dt(r["created_at"])),
            )
            for r in data.get("refunds", [])
        ]
        return payment

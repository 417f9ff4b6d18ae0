"""
支付仓储实现 - 使用SQLAlchemy实现数据访问

每次调用使用独立会话与事务；台账与退款记录只追加。
"""
from typing import Optional, List
from decimal import Decimal
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from domain.payment.entity import LedgerEntry, Payment, PaymentStatus, Refund, ensure_utc
from domain.payment.repository import (
    DuplicatePaymentError,
    PaymentFilter,
    PaymentRepository,
    RepositoryError,
)
from infrastructure.models.payment import LedgerEntryModel, PaymentModel, RefundModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _ledger_to_entity(model: LedgerEntryModel) -> LedgerEntry:
        return LedgerEntry(
            id=model.id,
            payment_id=model.payment_id,
            from_status=PaymentStatus(model.from_status) if model.from_status else None,
            to_status=PaymentStatus(model.to_status),
            amount=Decimal(str(model.amount)),
            actor=model.actor,
            created_at=ensure_utc(model.created_at),
        )

    @staticmethod
    def _refund_to_entity(model: RefundModel) -> Refund:
        return Refund(
            id=model.id,
            payment_id=model.payment_id,
            amount=Decimal(str(model.amount)),
            reason=model.reason,
            refund_ref=model.refund_ref,
            created_at=ensure_utc(model.created_at),
        )

    @staticmethod
    def _ledger_to_model(entry: LedgerEntry, seq: int) -> LedgerEntryModel:
        return LedgerEntryModel(
            id=entry.id,
            payment_id=entry.payment_id,
            seq=seq,
            from_status=entry.from_status.value if entry.from_status else None,
            to_status=entry.to_status.value,
            amount=entry.amount,
            actor=entry.actor,
            created_at=entry.created_at,
        )

    @staticmethod
    def _refund_to_model(refund: Refund, seq: int) -> RefundModel:
        return RefundModel(
            id=refund.id,
            payment_id=refund.payment_id,
            seq=seq,
            amount=refund.amount,
            reason=refund.reason,
            refund_ref=refund.refund_ref,
            created_at=refund.created_at,
        )

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        payment = Payment(
            id=model.id,
            client_id=model.client_id,
            merchant_id=model.merchant_id,
            order_id=model.order_id,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            method=model.method,
            status=PaymentStatus(model.status),
            description=model.description or "",
            metadata=dict(model.extra_metadata or {}),
            processor_ref=model.processor_ref,
            failure_reason=model.failure_reason,
            refunded_amount=Decimal(str(model.refunded_amount)),
            pending_refund_amount=(
                Decimal(str(model.pending_refund_amount)) if model.pending_refund_amount is not None else None
            ),
            created_at=model.created_at,
            updated_at=model.updated_at,
            processed_at=model.processed_at,
            cancelled_at=model.cancelled_at,
        )
        payment.ledger = [self._ledger_to_entity(e) for e in model.ledger_entries]
        payment.refunds = [self._refund_to_entity(r) for r in model.refunds]
        return payment

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        return PaymentModel(
            id=entity.id,
            client_id=entity.client_id,
            merchant_id=entity.merchant_id,
            order_id=entity.order_id,
            amount=entity.amount,
            currency=entity.currency.value,
            method=entity.method.value,
            status=entity.status.value,
            description=entity.description,
            processor_ref=entity.processor_ref,
            failure_reason=entity.failure_reason,
            refunded_amount=entity.refunded_amount,
            pending_refund_amount=entity.pending_refund_amount,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            processed_at=entity.processed_at,
            cancelled_at=entity.cancelled_at,
            extra_metadata=entity.metadata,
            ledger_entries=[self._ledger_to_model(e, i) for i, e in enumerate(entity.ledger)],
            refunds=[self._refund_to_model(r, i) for i, r in enumerate(entity.refunds)],
        )

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    db_payment = self._to_model(payment)
                    session.add(db_payment)
                    await session.flush()
                    created = self._to_entity(db_payment)
        except IntegrityError as e:
            logger.warning(
                "payment_create_conflict",
                merchant_id=payment.merchant_id,
                order_id=payment.order_id,
            )
            raise DuplicatePaymentError(payment.merchant_id, payment.order_id) from e
        except SQLAlchemyError as e:
            raise RepositoryError(f"create payment failed: {e}") from e

        logger.info(
            "payment_row_created",
            payment_id=created.id,
            order_id=created.order_id,
            merchant_id=created.merchant_id,
        )
        return created

    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        """根据ID获取支付"""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(PaymentModel).where(PaymentModel.id == payment_id)
                )
                db_payment = result.scalar_one_or_none()
                return self._to_entity(db_payment) if db_payment else None
        except SQLAlchemyError as e:
            raise RepositoryError(f"get payment failed: {e}") from e

    async def get_by_merchant_and_order(self, merchant_id: str, order_id: str) -> Optional[Payment]:
        """根据幂等键获取未取消的支付"""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(PaymentModel).where(
                        PaymentModel.merchant_id == merchant_id,
                        PaymentModel.order_id == order_id,
                        PaymentModel.status != PaymentStatus.CANCELLED.value,
                    )
                )
                db_payment = result.scalars().first()
                return self._to_entity(db_payment) if db_payment else None
        except SQLAlchemyError as e:
            raise RepositoryError(f"get payment by order failed: {e}") from e

    async def update(self, payment: Payment) -> Payment:
        """更新支付记录，追加尚未落库的台账与退款"""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(PaymentModel).where(PaymentModel.id == payment.id)
                    )
                    db_payment = result.scalar_one_or_none()
                    if db_payment is None:
                        raise RepositoryError(f"Payment with id {payment.id} not found")

                    # 更新字段
                    db_payment.status = payment.status.value
                    db_payment.processor_ref = payment.processor_ref
                    db_payment.failure_reason = payment.failure_reason
                    db_payment.refunded_amount = payment.refunded_amount
                    db_payment.pending_refund_amount = payment.pending_refund_amount
                    db_payment.updated_at = payment.updated_at
                    db_payment.processed_at = payment.processed_at
                    db_payment.cancelled_at = payment.cancelled_at
                    db_payment.extra_metadata = dict(payment.metadata)

                    known_entries = {e.id for e in db_payment.ledger_entries}
                    for seq, entry in enumerate(payment.ledger):
                        if entry.id not in known_entries:
                            db_payment.ledger_entries.append(self._ledger_to_model(entry, seq))

                    known_refunds = {r.id for r in db_payment.refunds}
                    for seq, refund in enumerate(payment.refunds):
                        if refund.id not in known_refunds:
                            db_payment.refunds.append(self._refund_to_model(refund, seq))

                    await session.flush()
                    updated = self._to_entity(db_payment)
        except SQLAlchemyError as e:
            raise RepositoryError(f"update payment failed: {e}") from e

        logger.info(
            "payment_row_updated",
            payment_id=updated.id,
            status=updated.status.value,
        )
        return updated

    async def list(self, filter: PaymentFilter) -> List[Payment]:
        """按条件分页查询（created_at 倒序）"""
        query = select(PaymentModel)
        if filter.client_id:
            query = query.where(PaymentModel.client_id == filter.client_id)
        if filter.merchant_id:
            query = query.where(PaymentModel.merchant_id == filter.merchant_id)
        if filter.status:
            query = query.where(PaymentModel.status == PaymentStatus(filter.status).value)
        query = query.order_by(PaymentModel.created_at.desc()).offset(filter.offset).limit(filter.limit)

        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return [self._to_entity(p) for p in result.scalars().all()]
        except SQLAlchemyError as e:
            raise RepositoryError(f"list payments failed: {e}") from e

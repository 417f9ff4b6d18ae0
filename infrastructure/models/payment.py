"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON,
    Index, ForeignKey, text
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Payment 中
    """
    __tablename__ = "payments"

    # 主键（UUID 字符串）
    id = Column(String(36), primary_key=True)

    # 归属信息
    client_id = Column(String(100), nullable=False, index=True, comment="客户ID")
    merchant_id = Column(String(100), nullable=False, comment="商户ID")
    order_id = Column(String(100), nullable=False, comment="商户订单ID")

    # 金额信息（使用 Numeric 存储精确金额）
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="支付金额")
    currency = Column(String(3), nullable=False, comment="货币代码: USD/EUR/GBP")
    method = Column(String(30), nullable=False, comment="支付方式: card/bank_transfer/wallet/crypto")

    refunded_amount = Column(
        Numeric(precision=15, scale=2),
        nullable=False,
        default=0,
        comment="已退款金额"
    )
    pending_refund_amount = Column(
        Numeric(precision=15, scale=2),
        nullable=True,
        comment="已提交处理方、尚未确认的退款金额"
    )

    # 状态
    status = Column(
        String(30),
        nullable=False,
        default="pending",
        index=True,
        comment="支付状态: pending/processing/completed/failed/partially_refunded/refunded/cancelled"
    )

    description = Column(Text, nullable=True, comment="描述")
    processor_ref = Column(String(200), nullable=True, comment="处理方交易ID（只写一次）")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    # 时间戳
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="处理完成时间")
    cancelled_at = Column(DateTime(timezone=True), nullable=True, comment="取消时间")

    # 元数据（JSON格式，使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    # 关系
    ledger_entries = relationship(
        "LedgerEntryModel",
        back_populates="payment",
        lazy="selectin",
        order_by="LedgerEntryModel.seq",
    )
    refunds = relationship(
        "RefundModel",
        back_populates="payment",
        lazy="selectin",
        order_by="RefundModel.seq",
    )

    # 索引
    __table_args__ = (
        # 幂等键：未取消的支付中 (merchant_id, order_id) 唯一
        Index(
            "uq_payments_merchant_order_active",
            "merchant_id",
            "order_id",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
        Index("ix_payments_merchant_status", "merchant_id", "status"),
        Index("ix_payments_created_at", "created_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id='{self.id}', order_id='{self.order_id}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class LedgerEntryModel(Base):
    """
    台账条目 - 只追加，不更新不删除
    """
    __tablename__ = "payment_ledger_entries"

    id = Column(String(36), primary_key=True)
    payment_id = Column(
        String(36),
        ForeignKey("payments.id"),
        nullable=False,
        index=True,
        comment="关联的支付ID"
    )
    seq = Column(Integer, nullable=False, comment="在支付内的顺序号")
    from_status = Column(String(30), nullable=True, comment="原状态（创建时为空）")
    to_status = Column(String(30), nullable=False, comment="新状态")
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="涉及金额")
    actor = Column(String(100), nullable=False, default="system", comment="操作者")
    created_at = Column(DateTime(timezone=True), nullable=False, comment="创建时间")

    payment = relationship("PaymentModel", back_populates="ledger_entries")

    def __repr__(self):
        return (
            f"<LedgerEntryModel(id='{self.id}', payment_id='{self.payment_id}', "
            f"{self.from_status}->{self.to_status})>"
        )


class RefundModel(Base):
    """
    退款数据库模型

    退款作为支付聚合的一部分，只记录成功的退款
    """
    __tablename__ = "payment_refunds"

    id = Column(String(36), primary_key=True)
    payment_id = Column(
        String(36),
        ForeignKey("payments.id"),
        nullable=False,
        index=True,
        comment="关联的支付ID"
    )
    seq = Column(Integer, nullable=False, comment="在支付内的顺序号")
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="退款金额")
    reason = Column(Text, nullable=True, comment="退款原因")
    refund_ref = Column(String(200), nullable=False, comment="处理方退款ID")
    created_at = Column(DateTime(timezone=True), nullable=False, comment="创建时间")

    payment = relationship("PaymentModel", back_populates="refunds")

    def __repr__(self):
        return (
            f"<RefundModel(id='{self.id}', payment_id='{self.payment_id}', "
            f"amount={self.amount})>"
        )

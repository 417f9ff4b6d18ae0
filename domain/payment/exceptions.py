"""
支付领域异常
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from domain.common.exceptions import (
    BusinessException,
    ConflictException,
    DomainValidationException,
    ResourceNotFoundException,
)
from shared.codes.payment_codes import PaymentCode


class PaymentNotFoundException(ResourceNotFoundException):
    """支付记录不存在"""

    def __init__(self, identifier: str):
        super().__init__(
            f"Payment not found: {identifier}",
            code=PaymentCode.PAYMENT_NOT_FOUND,
            error_type="PaymentNotFound",
            details={"payment": identifier},
            message_key="payment.not_found",
        )


class InvalidStateTransitionException(ConflictException):
    """非法状态转换 - 不产生任何修改"""

    def __init__(self, payment_id: Optional[str], current: str, target: str):
        super().__init__(
            f"Cannot transition payment from {current} to {target}",
            code=PaymentCode.INVALID_STATE_TRANSITION,
            error_type="InvalidStateTransition",
            details={"payment_id": payment_id, "current_status": current, "target_status": target},
            field="status",
            message_key="payment.status.invalid_transition",
        )


class AlreadyInProgressException(ConflictException):
    """其他实例正在处理该支付（未获取到分布式锁）"""

    def __init__(self, payment_id: str):
        super().__init__(
            f"Payment {payment_id} is already being processed",
            code=PaymentCode.ALREADY_IN_PROGRESS,
            error_type="AlreadyInProgress",
            details={"payment_id": payment_id},
            message_key="payment.in_progress",
        )


class ProcessorRefImmutableException(ConflictException):
    """渠道引用ID只能写入一次"""

    def __init__(self, payment_id: Optional[str], existing: str):
        super().__init__(
            f"Processor reference already set for payment {payment_id}",
            code=PaymentCode.PROCESSOR_REF_IMMUTABLE,
            error_type="ProcessorRefImmutable",
            details={"payment_id": payment_id, "processor_ref": existing},
            field="processor_ref",
            message_key="payment.processor_ref.immutable",
        )


class RefundInProgressException(ConflictException):
    """已有一笔退款提交给处理方但尚未确认落库"""

    def __init__(self, payment_id: Optional[str], pending_amount: Decimal):
        super().__init__(
            f"A refund of {pending_amount} is still unresolved for payment {payment_id}",
            code=PaymentCode.REFUND_IN_PROGRESS,
            error_type="RefundInProgress",
            details={"payment_id": payment_id, "pending_refund_amount": str(pending_amount)},
            message_key="payment.refund.in_progress",
        )


class UnsupportedMethodException(DomainValidationException):
    def __init__(self, method: str):
        super().__init__(
            f"Unsupported payment method: {method}",
            field="method",
            details={"method": method},
            message_key="payment.method.unsupported",
            code=PaymentCode.UNSUPPORTED_METHOD,
            error_type="UnsupportedMethod",
        )


class UnsupportedCurrencyException(DomainValidationException):
    def __init__(self, currency: str):
        super().__init__(
            f"Unsupported currency: {currency}",
            field="currency",
            details={"currency": currency},
            message_key="payment.currency.unsupported",
            code=PaymentCode.UNSUPPORTED_CURRENCY,
            error_type="UnsupportedCurrency",
        )


class RefundExceedsRemainingException(DomainValidationException):
    """退款金额超过剩余可退金额"""

    def __init__(self, refund_amount: Decimal, available: Decimal):
        super().__init__(
            f"Refund amount {refund_amount} exceeds remaining refundable {available}",
            field="amount",
            details={"amount": str(refund_amount), "remaining": str(available)},
            message_key="payment.refund.exceeds_remaining",
            code=PaymentCode.REFUND_EXCEEDS_REMAINING,
            error_type="RefundExceedsRemaining",
        )


class ExternalProcessorException(BusinessException):
    """外部支付处理方调用失败。支付已被置为 failed（退款时保持不变），核心内不重试。"""

    category = "external_processor"

    def __init__(
        self,
        message: str,
        *,
        processor: Optional[str] = None,
        payment_id: Optional[str] = None,
        timeout: bool = False,
    ):
        self.payment_id = payment_id
        super().__init__(
            code=PaymentCode.PROVIDER_TIMEOUT if timeout else PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="ExternalProcessorError",
            details={"processor": processor, "payment_id": payment_id},
            message_key="payment.processor.failed",
        )

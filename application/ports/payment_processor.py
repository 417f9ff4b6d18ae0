"""
Payment processor port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; concrete processors (card network,
bank, wallet) are supplied by the composition root.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from application.dtos.payments import ProcessorRefund, ProcessorResult
from domain.payment.entity import Payment


@runtime_checkable
class PaymentProcessor(Protocol):
    """Processor adapter protocol.

    One call per attempt; implementations must not retry internally and
    should raise on any failure.
    """

    name: str

    async def process(self, payment: Payment, details: Mapping[str, Any]) -> ProcessorResult: ...

    async def refund(self, payment: Payment, amount: Decimal, reason: Optional[str]) -> ProcessorRefund: ...

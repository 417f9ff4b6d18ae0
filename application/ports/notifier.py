"""
Notifier port: best-effort delivery of payment status changes.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from domain.payment.entity import Payment
from domain.payment.events import PaymentEvent


@runtime_checkable
class Notifier(Protocol):
    async def notify_status_change(
        self,
        payment: Payment,
        event: PaymentEvent,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None: ...

    async def aclose(self) -> None: ...

"""Notifier that only writes status changes to the structured log."""
from __future__ import annotations

from typing import Any, Optional

from core.logging_config import get_logger
from domain.payment.entity import Payment
from domain.payment.events import PaymentEvent

logger = get_logger(__name__)


class LoggingNotifier:
    async def notify_status_change(
        self,
        payment: Payment,
        event: PaymentEvent,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        logger.info(
            "payment_status_changed",
            event_type=event.value,
            payment_id=payment.id,
            status=payment.status.value,
            merchant_id=payment.merchant_id,
            order_id=payment.order_id,
            metadata=metadata,
        )

    async def aclose(self) -> None:
        return None

"""
Webhook notifier: POSTs payment status changes to a configured URL.

Body: {"event", "payment", "timestamp", "metadata"}; headers carry
X-Event-Type and X-Payment-ID. Delivery is skipped when no URL is set.
Transport errors and 5xx responses are retried a bounded number of times.
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from application.dtos.payments import NotificationPayload
from core.logging_config import get_logger
from domain.payment.entity import Payment
from domain.payment.events import PaymentEvent


logger = get_logger(__name__)


class WebhookDeliveryError(Exception):
    """Receiver answered with a retryable (5xx) status."""

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"webhook receiver returned {status_code}")


class WebhookNotifier:
    def __init__(
        self,
        url: Optional[str],
        *,
        timeout: float = 5.0,
        max_attempts: int = 3,
        base_backoff: float = 0.2,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._base_backoff = base_backoff
        self._client = client
        self._owns_client = client is None

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
        yield self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created here."""
        if self._client is not None and self._owns_client:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    def build_payload(
        self,
        payment: Payment,
        event: PaymentEvent,
        metadata: Optional[dict[str, Any]] = None,
    ) -> NotificationPayload:
        return NotificationPayload(
            event=event.value,
            payment=payment.to_dict(),
            timestamp=int(time.time()),
            metadata=metadata,
        )

    async def notify_status_change(
        self,
        payment: Payment,
        event: PaymentEvent,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        if not self.url:
            logger.debug("webhook_skipped_no_url", payment_id=payment.id, event_type=event.value)
            return

        payload = self.build_payload(payment, event, metadata)
        headers = {
            "Content-Type": "application/json",
            "X-Event-Type": event.value,
            "X-Payment-ID": payment.id,
        }

        async def _send() -> httpx.Response:
            async with self.client() as client:
                resp = await client.post(self.url, content=payload.model_dump_json(), headers=headers)
            if resp.status_code >= 500:
                raise WebhookDeliveryError(resp.status_code)
            resp.raise_for_status()
            return resp

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._base_backoff, min=0.05, max=2.0),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError, WebhookDeliveryError)),
            reraise=True,
        ):
            with attempt:
                resp = await _send()

        logger.info(
            "webhook_delivered",
            payment_id=payment.id,
            event_type=event.value,
            status_code=resp.status_code,
            attempts=attempt.retry_state.attempt_number,
        )

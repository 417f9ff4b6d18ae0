import json

import httpx
import pytest

from domain.payment.entity import Payment
from domain.payment.events import PaymentEvent
from infrastructure.external.notifications import LoggingNotifier, WebhookNotifier


def _payment() -> Payment:
    return Payment.create(client_id="C1", merchant_id="M1", order_id="O1", amount="12.50", currency="EUR", method="wallet")


@pytest.mark.asyncio
async def test_webhook_posts_payload_and_headers():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier("https://hooks.example.com/pay", client=client)
    payment = _payment()
    await notifier.notify_status_change(payment, PaymentEvent.CREATED, {"source": "test"})
    await client.aclose()

    assert len(seen) == 1
    request = seen[0]
    assert request.method == "POST"
    assert request.headers["X-Event-Type"] == "payment.created"
    assert request.headers["X-Payment-ID"] == payment.id
    body = json.loads(request.content)
    assert body["event"] == "payment.created"
    assert body["payment"]["amount"] == "12.50"
    assert body["payment"]["currency"] == "EUR"
    assert body["metadata"] == {"source": "test"}
    assert isinstance(body["timestamp"], int)


@pytest.mark.asyncio
async def test_webhook_retries_server_errors_then_succeeds():
    statuses = iter([503, 502, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses))

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier("https://hooks.example.com/pay", client=client, max_attempts=3, base_backoff=0.001)
    await notifier.notify_status_change(_payment(), PaymentEvent.PROCESSED)
    await client.aclose()


@pytest.mark.asyncio
async def test_webhook_does_not_retry_client_errors():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier("https://hooks.example.com/pay", client=client, max_attempts=3, base_backoff=0.001)
    with pytest.raises(httpx.HTTPStatusError):
        await notifier.notify_status_change(_payment(), PaymentEvent.FAILED)
    await client.aclose()
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_webhook_skipped_without_url():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("must not send")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier(None, client=client)
    await notifier.notify_status_change(_payment(), PaymentEvent.CREATED)
    await client.aclose()


@pytest.mark.asyncio
async def test_logging_notifier_accepts_events():
    await LoggingNotifier().notify_status_change(_payment(), PaymentEvent.REFUNDED, {"refund_id": "r1"})

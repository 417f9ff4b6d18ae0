"""
Payment lifecycle events.

Event names are what notifiers publish (webhook `X-Event-Type` header).
Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from enum import Enum


class PaymentEvent(str, Enum):
    CREATED = "payment.created"
    PROCESSED = "payment.processed"
    FAILED = "payment.failed"
    REFUNDED = "payment.refunded"
    CANCELLED = "payment.cancelled"

"""
Payment specific codes.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_TIMEOUT = 60003

    # Payment lifecycle (601xx)
    PAYMENT_NOT_FOUND = 60100
    INVALID_STATE_TRANSITION = 60101
    ALREADY_IN_PROGRESS = 60102
    UNSUPPORTED_METHOD = 60103
    UNSUPPORTED_CURRENCY = 60104
    REFUND_EXCEEDS_REMAINING = 60105
    PROCESSOR_REF_IMMUTABLE = 60106
    REFUND_IN_PROGRESS = 60107


# Category of each payment code, used by the transport-facing status mapping.
PAYMENT_CODE_CATEGORY = {
    PaymentCode.PROVIDER_ERROR: "external_processor",
    PaymentCode.PROVIDER_TIMEOUT: "external_processor",
    PaymentCode.PAYMENT_NOT_FOUND: "not_found",
    PaymentCode.INVALID_STATE_TRANSITION: "conflict",
    PaymentCode.ALREADY_IN_PROGRESS: "conflict",
    PaymentCode.UNSUPPORTED_METHOD: "validation",
    PaymentCode.UNSUPPORTED_CURRENCY: "validation",
    PaymentCode.REFUND_EXCEEDS_REMAINING: "validation",
    PaymentCode.PROCESSOR_REF_IMMUTABLE: "conflict",
    PaymentCode.REFUND_IN_PROGRESS: "conflict",
}

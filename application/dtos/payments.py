"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.types import condecimal

from domain.payment.entity import PaymentStatus

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 100


class CreatePaymentRequest(BaseModel):
    """Currency and method are checked against the closed enums by the entity,
    so unsupported values surface as typed validation errors."""

    client_id: str = Field(min_length=1)
    merchant_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)
    # 与存储列 Numeric(15, 2) 一致：最多两位小数
    amount: condecimal(gt=0, max_digits=15, decimal_places=2)  # type: ignore[valid-type]
    currency: str = Field(default="USD")
    method: str
    description: str = ""
    metadata: Optional[dict[str, Any]] = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        return (v or "").strip().upper()

    @field_validator("method")
    @classmethod
    def _lower_method(cls, v: str) -> str:
        return (v or "").strip().lower()


class ListPaymentsQuery(BaseModel):
    client_id: Optional[str] = None
    merchant_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    limit: int = DEFAULT_LIST_LIMIT
    offset: int = 0

    @field_validator("limit", mode="before")
    @classmethod
    def _default_limit(cls, v: Any) -> int:
        # out-of-range limits fall back to the default page size
        if v is None:
            return DEFAULT_LIST_LIMIT
        v = int(v)
        if v <= 0 or v > MAX_LIST_LIMIT:
            return DEFAULT_LIST_LIMIT
        return v

    @field_validator("offset", mode="before")
    @classmethod
    def _non_negative_offset(cls, v: Any) -> int:
        if v is None:
            return 0
        return max(int(v), 0)


class ProcessorResult(BaseModel):
    """Outcome of a successful processor charge."""

    processor_ref: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProcessorRefund(BaseModel):
    refund_ref: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class NotificationPayload(BaseModel):
    """Webhook body: {event, payment, timestamp, metadata}"""

    event: str
    payment: dict[str, Any]
    timestamp: int
    metadata: Optional[dict[str, Any]] = None

    model_config = ConfigDict(extra="forbid")

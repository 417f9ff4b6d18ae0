"""
Processor router: payment method -> processor adapter.

The registry is injected by the composition root. Each attempt performs
exactly one external call, bounded by the processor timeout and never
retried here; any failure is reported as ExternalProcessorException.
"""
from __future__ import annotations

import asyncio
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Mapping, Optional

from application.dtos.payments import ProcessorRefund, ProcessorResult
from application.ports.payment_processor import PaymentProcessor
from core.logging_config import get_logger
from domain.payment.entity import Payment, PaymentMethod
from domain.payment.exceptions import ExternalProcessorException, UnsupportedMethodException

logger = get_logger(__name__)


class ProcessorRouter:
    def __init__(self, processors: Mapping[PaymentMethod, PaymentProcessor], *, timeout_seconds: float) -> None:
        self._processors = MappingProxyType({PaymentMethod(m): p for m, p in processors.items()})
        self._timeout = timeout_seconds

    @property
    def methods(self) -> frozenset:
        return frozenset(self._processors)

    def resolve(self, method: PaymentMethod) -> PaymentProcessor:
        processor = self._processors.get(method)
        if processor is None:
            raise UnsupportedMethodException(getattr(method, "value", str(method)))
        return processor

    @staticmethod
    def _name(processor: PaymentProcessor) -> str:
        return getattr(processor, "name", type(processor).__name__)

    async def process(self, payment: Payment, details: Optional[Mapping[str, Any]] = None) -> ProcessorResult:
        processor = self.resolve(payment.method)
        name = self._name(processor)
        logger.info("processor_call", processor=name, payment_id=payment.id, op="process")
        try:
            result = await asyncio.wait_for(processor.process(payment, dict(details or {})), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.error("processor_timeout", processor=name, payment_id=payment.id, timeout=self._timeout)
            raise ExternalProcessorException(
                f"Processor {name} timed out after {self._timeout}s",
                processor=name,
                payment_id=payment.id,
                timeout=True,
            ) from e
        except Exception as e:
            logger.error("processor_error", processor=name, payment_id=payment.id, error=str(e), exc_info=True)
            raise ExternalProcessorException(
                f"Processor {name} failed: {e}",
                processor=name,
                payment_id=payment.id,
            ) from e
        if not isinstance(result, ProcessorResult) or not result.processor_ref:
            raise ExternalProcessorException(
                f"Processor {name} returned no reference",
                processor=name,
                payment_id=payment.id,
            )
        return result

    async def refund(self, payment: Payment, amount: Decimal, reason: Optional[str] = None) -> ProcessorRefund:
        processor = self.resolve(payment.method)
        name = self._name(processor)
        logger.info("processor_call", processor=name, payment_id=payment.id, op="refund", amount=str(amount))
        try:
            result = await asyncio.wait_for(processor.refund(payment, amount, reason), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.error("processor_timeout", processor=name, payment_id=payment.id, timeout=self._timeout)
            raise ExternalProcessorException(
                f"Processor {name} refund timed out after {self._timeout}s",
                processor=name,
                payment_id=payment.id,
                timeout=True,
            ) from e
        except Exception as e:
            logger.error("processor_error", processor=name, payment_id=payment.id, error=str(e), exc_info=True)
            raise ExternalProcessorException(
                f"Processor {name} refund failed: {e}",
                processor=name,
                payment_id=payment.id,
            ) from e
        if not isinstance(result, ProcessorRefund) or not result.refund_ref:
            raise ExternalProcessorException(
                f"Processor {name} returned no refund reference",
                processor=name,
                payment_id=payment.id,
            )
        return result

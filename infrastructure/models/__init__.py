"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import PaymentModel, LedgerEntryModel, RefundModel

__all__ = [
    "Base",
    "metadata",
    "PaymentModel",
    "LedgerEntryModel",
    "RefundModel",
]

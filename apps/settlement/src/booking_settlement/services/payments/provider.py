"""Provider-neutral payment interface and DTOs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Final, Mapping, Protocol

CAPTURE_SUCCEEDED: Final[str] = "succeeded"
FAILED_TRANSFER_STATUSES: Final[frozenset[str]] = frozenset({"failed", "canceled", "reversed"})
REUSABLE_REFUND_STATUSES: Final[frozenset[str]] = frozenset({"succeeded", "pending"})
FAILED_REFUND_STATUSES: Final[frozenset[str]] = frozenset({"failed", "canceled"})


class PaymentProviderError(RuntimeError):
    """Raised when a provider call fails.

    ``outcome_unknown`` is set when the request may have reached the provider
    (timeouts, dropped connections). Callers must re-query provider state on the
    next run instead of treating such an error as a definite failure.
    """

    def __init__(self, message: str, *, operation: str, outcome_unknown: bool = False) -> None:
        super().__init__(message)
        self.operation = operation
        self.outcome_unknown = outcome_unknown


@dataclass(slots=True)
class ProviderTransfer:
    """Transfer from the platform account to a connected payout destination."""

    transfer_id: str
    destination: str
    amount: Decimal
    currency: str
    status: str
    created_at: datetime
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.status in FAILED_TRANSFER_STATUSES


@dataclass(slots=True)
class ProviderRefund:
    """Refund issued against an original captured payment."""

    refund_id: str
    payment_ref: str
    amount: Decimal
    currency: str
    status: str
    failure_reason: str | None
    created_at: datetime


class PaymentProvider(Protocol):
    """Operations the settlement stages need from a payment provider."""

    async def create_transfer(
        self,
        *,
        destination: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> ProviderTransfer:
        ...

    async def retrieve_transfer(self, transfer_id: str) -> ProviderTransfer:
        ...

    async def list_transfers(self, *, destination: str, limit: int = 100) -> list[ProviderTransfer]:
        ...

    async def create_refund(
        self,
        *,
        payment_ref: str,
        amount: Decimal,
        idempotency_key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> ProviderRefund:
        ...

    async def list_refunds(self, *, payment_ref: str, limit: int = 10) -> list[ProviderRefund]:
        ...

    async def retrieve_capture_status(self, payment_ref: str) -> str:
        ...


__all__ = [
    "CAPTURE_SUCCEEDED",
    "FAILED_REFUND_STATUSES",
    "FAILED_TRANSFER_STATUSES",
    "REUSABLE_REFUND_STATUSES",
    "PaymentProvider",
    "PaymentProviderError",
    "ProviderRefund",
    "ProviderTransfer",
]

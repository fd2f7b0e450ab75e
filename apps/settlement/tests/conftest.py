import sys
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import booking_settlement.models  # noqa: E402,F401
from booking_settlement.db.base import Base  # noqa: E402
from booking_settlement.services.payments import (  # noqa: E402
    PaymentProviderError,
    ProviderRefund,
    ProviderTransfer,
)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


class StubPaymentProvider:
    """In-memory payment provider that records calls and honours idempotency keys."""

    def __init__(self) -> None:
        self.capture_statuses: dict[str, str] = {}
        self.transfers: dict[str, ProviderTransfer] = {}
        self.refunds: dict[str, list[ProviderRefund]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._failures: dict[str, Exception] = {}
        self._transfer_keys: dict[str, str] = {}
        self._refund_keys: dict[str, ProviderRefund] = {}
        self.next_refund_status = "succeeded"

    def fail_on(self, method: str, exc: Exception | None = None) -> None:
        self._failures[method] = exc or PaymentProviderError(f"{method} unavailable", operation=method)

    def clear_failure(self, method: str) -> None:
        self._failures.pop(method, None)

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.calls if name == method]

    def _record(self, method: str, **payload: Any) -> None:
        self.calls.append((method, payload))
        failure = self._failures.get(method)
        if failure is not None:
            raise failure

    def add_transfer(
        self,
        *,
        destination: str,
        amount: Decimal,
        currency: str = "USD",
        status: str = "paid",
        created_at: datetime | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> ProviderTransfer:
        transfer = ProviderTransfer(
            transfer_id=f"t_{len(self.transfers) + 1}",
            destination=destination,
            amount=Decimal(amount).quantize(Decimal("0.01")),
            currency=currency,
            status=status,
            created_at=created_at or datetime.now(timezone.utc),
            metadata=dict(metadata or {}),
        )
        self.transfers[transfer.transfer_id] = transfer
        return transfer

    def set_transfer_status(self, transfer_id: str, status: str) -> None:
        self.transfers[transfer_id] = replace(self.transfers[transfer_id], status=status)

    def add_refund(self, payment_ref: str, *, status: str, amount: Decimal = Decimal("25.00")) -> ProviderRefund:
        refund = ProviderRefund(
            refund_id=f"re_{sum(len(items) for items in self.refunds.values()) + 1}",
            payment_ref=payment_ref,
            amount=amount,
            currency="USD",
            status=status,
            failure_reason="insufficient_funds" if status == "failed" else None,
            created_at=datetime.now(timezone.utc),
        )
        self.refunds.setdefault(payment_ref, []).append(refund)
        return refund

    async def create_transfer(
        self,
        *,
        destination: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> ProviderTransfer:
        self._record(
            "create_transfer",
            destination=destination,
            amount=amount,
            currency=currency,
            idempotency_key=idempotency_key,
            metadata=dict(metadata or {}),
        )
        existing = self._transfer_keys.get(idempotency_key)
        if existing is not None:
            return self.transfers[existing]
        transfer = self.add_transfer(destination=destination, amount=amount, currency=currency, metadata=metadata)
        self._transfer_keys[idempotency_key] = transfer.transfer_id
        return transfer

    async def retrieve_transfer(self, transfer_id: str) -> ProviderTransfer:
        self._record("retrieve_transfer", transfer_id=transfer_id)
        return self.transfers[transfer_id]

    async def list_transfers(self, *, destination: str, limit: int = 100) -> list[ProviderTransfer]:
        self._record("list_transfers", destination=destination, limit=limit)
        matching = [item for item in self.transfers.values() if item.destination == destination]
        return list(reversed(matching))[:limit]

    async def create_refund(
        self,
        *,
        payment_ref: str,
        amount: Decimal,
        idempotency_key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> ProviderRefund:
        self._record("create_refund", payment_ref=payment_ref, amount=amount, idempotency_key=idempotency_key)
        existing = self._refund_keys.get(idempotency_key)
        if existing is not None:
            return existing
        refund = self.add_refund(payment_ref, status=self.next_refund_status, amount=amount)
        self._refund_keys[idempotency_key] = refund
        return refund

    async def list_refunds(self, *, payment_ref: str, limit: int = 10) -> list[ProviderRefund]:
        self._record("list_refunds", payment_ref=payment_ref, limit=limit)
        return list(self.refunds.get(payment_ref, []))[:limit]

    async def retrieve_capture_status(self, payment_ref: str) -> str:
        self._record("retrieve_capture_status", payment_ref=payment_ref)
        return self.capture_statuses.get(payment_ref, "requires_payment_method")


@pytest.fixture
def fake_provider() -> StubPaymentProvider:
    return StubPaymentProvider()

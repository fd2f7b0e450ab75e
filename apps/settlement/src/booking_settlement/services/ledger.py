"""Ledger writes and wallet row access shared by the settlement stages."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_settlement.models.ledger import LedgerEntry, LedgerEntryKindEnum
from booking_settlement.models.wallet import Wallet, WalletStatusEnum

_CENT = Decimal("0.01")


def to_amount(value: object) -> Decimal:
    """Normalize numeric column values (floats on SQLite) into two-place decimals."""

    if isinstance(value, Decimal):
        return value.quantize(_CENT)
    return Decimal(str(value)).quantize(_CENT)


@dataclass(slots=True)
class WalletCredit:
    wallet_id: UUID
    applied: bool
    balance: Decimal


class LedgerService:
    """Existence-checked ledger inserts plus locked wallet balance updates.

    Every write follows the same order: look up the idempotency reference,
    insert the ledger row, and only then touch the wallet balance. A retried
    stage that already committed the ledger row therefore never moves money twice.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def has_entry(self, reference: str) -> bool:
        stmt = select(LedgerEntry.id).where(LedgerEntry.reference == reference).limit(1)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def record_entry(
        self,
        *,
        reference: str,
        kind: LedgerEntryKindEnum,
        amount: Decimal,
        currency: str,
        owner: str,
        counterparty_to: str,
        counterparty_from: str,
        message: str | None = None,
        booking_id: UUID | None = None,
        wallet_id: UUID | None = None,
    ) -> LedgerEntry | None:
        """Insert a ledger row unless ``reference`` is already recorded."""

        if await self.has_entry(reference):
            logger.info("Ledger entry already recorded", reference=reference)
            return None

        entry = LedgerEntry(
            reference=reference,
            kind=kind,
            amount=to_amount(amount),
            currency=currency,
            owner=owner,
            counterparty_to=counterparty_to,
            counterparty_from=counterparty_from,
            message=message,
            booking_id=booking_id,
            wallet_id=wallet_id,
        )
        self._db.add(entry)
        await self._db.flush()
        return entry

    async def lock_wallet(self, owner: str, currency: str, *, create: bool = False) -> Wallet | None:
        """Select the owner's wallet ``FOR UPDATE``, optionally creating it."""

        stmt = (
            select(Wallet)
            .where(Wallet.owner == owner, Wallet.currency == currency)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        wallet = result.scalar_one_or_none()
        if wallet is None and create:
            wallet = Wallet(
                owner=owner,
                currency=currency,
                balance=Decimal("0.00"),
                status=WalletStatusEnum.ACTIVE,
            )
            self._db.add(wallet)
            await self._db.flush()
            logger.info("Created wallet", owner=owner, currency=currency, wallet_id=str(wallet.id))
        return wallet

    async def credit_wallet(
        self,
        *,
        owner: str,
        currency: str,
        amount: Decimal,
        reference: str,
        message: str,
        booking_id: UUID | None = None,
    ) -> WalletCredit:
        """Credit ``amount`` to the owner's wallet once per ``reference``."""

        wallet = await self.lock_wallet(owner, currency, create=True)
        assert wallet is not None
        entry = await self.record_entry(
            reference=reference,
            kind=LedgerEntryKindEnum.CREDIT,
            amount=amount,
            currency=currency,
            owner=owner,
            counterparty_to="wallet",
            counterparty_from="system",
            message=message,
            booking_id=booking_id,
            wallet_id=wallet.id,
        )
        if entry is None:
            return WalletCredit(wallet_id=wallet.id, applied=False, balance=to_amount(wallet.balance))

        wallet.balance = to_amount(wallet.balance) + to_amount(amount)
        await self._db.flush()
        return WalletCredit(wallet_id=wallet.id, applied=True, balance=to_amount(wallet.balance))

    async def count_withdrawals(self, wallet_id: UUID) -> int:
        stmt = select(func.count(LedgerEntry.id)).where(
            LedgerEntry.wallet_id == wallet_id,
            LedgerEntry.kind == LedgerEntryKindEnum.DEBIT,
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)


__all__ = ["LedgerService", "WalletCredit", "to_amount"]

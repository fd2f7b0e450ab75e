"""Stage D: sweep wallet balances out to owners' payout accounts.

A withdrawal moves money out of the platform before anything is written
locally, so each wallet walks a recovery-first protocol:

1. claim the wallet row with ``FOR UPDATE SKIP LOCKED`` so overlapping sweeps
   partition the work;
2. resolve the transfer to finalize: the stored ``pending_transfer_ref`` first,
   then a matching recent transfer to the same destination, and only then a new
   transfer created under a deterministic idempotency key;
3. in one transaction write the debit ledger row, the notification, and finally
   the balance decrement plus marker reset.

``withdrawal_status = withdrawing`` with a stored ``pending_transfer_ref`` means
the transfer exists and only local bookkeeping is outstanding.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_settlement.core.logging import stage_logger
from booking_settlement.core.settings import get_settings
from booking_settlement.models.ledger import LedgerEntryKindEnum
from booking_settlement.models.notification import NotificationCategoryEnum
from booking_settlement.models.profile import Profile
from booking_settlement.models.wallet import Wallet, WalletStatusEnum, WithdrawalStatusEnum
from booking_settlement.services.bookings import SettlementStage
from booking_settlement.services.ledger import LedgerService, to_amount
from booking_settlement.services.notifications import NotificationService
from booking_settlement.services.payments import (
    PaymentProvider,
    PaymentProviderError,
    ProviderTransfer,
    StripePaymentProvider,
)

from .common import SessionFactory, as_utc, open_session

_STAGE = SettlementStage.WITHDRAWAL_SWEEPER
_ZERO = Decimal("0.00")


class WalletClaimLost(RuntimeError):
    """Raised when a wallet can no longer be re-claimed after an intermediate commit."""


@dataclass(slots=True)
class WalletSnapshot:
    wallet_id: UUID
    owner: str
    currency: str
    balance: Decimal


def withdrawal_idempotency_key(wallet_id: UUID, balance: Decimal, sequence: int) -> str:
    cents = int((to_amount(balance) * 100).to_integral_value())
    return f"wallet-withdrawal:{wallet_id}:{cents}:{sequence}"


def withdrawal_failure_message(balance: Decimal, reference: str) -> str:
    return (
        f"Withdrawal of ${to_amount(balance)} from your wallet failed (reference {reference}). "
        "Please contact support."
    )


def _eligibility_clause():
    return (
        Wallet.status == WalletStatusEnum.ACTIVE,
        or_(Wallet.withdrawal_status.is_(None), Wallet.withdrawal_status == WithdrawalStatusEnum.WITHDRAWING),
    )


async def _eligible_wallet_ids(session_factory: SessionFactory, minimum_balance: Decimal) -> list[UUID]:
    async with await open_session(session_factory) as session:
        stmt = (
            select(Wallet.id)
            .where(Wallet.balance >= minimum_balance, *_eligibility_clause())
            .order_by(Wallet.created_at)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())


async def claim_wallet(
    session: AsyncSession, wallet_id: UUID, *, minimum_balance: Decimal | None = None
) -> Wallet | None:
    """Lock an eligible wallet row, returning ``None`` when another sweep holds it."""

    stmt = select(Wallet).where(Wallet.id == wallet_id, *_eligibility_clause())
    if minimum_balance is not None:
        stmt = stmt.where(Wallet.balance >= minimum_balance)
    stmt = stmt.with_for_update(skip_locked=True).execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def _commit_and_reclaim(session: AsyncSession, wallet_id: UUID) -> Wallet:
    await session.commit()
    wallet = await claim_wallet(session, wallet_id)
    if wallet is None:
        raise WalletClaimLost(f"Wallet {wallet_id} was claimed elsewhere")
    return wallet


async def _payout_destination(session: AsyncSession, owner: str) -> str | None:
    result = await session.execute(select(Profile.stripe_account_id).where(Profile.email == owner).limit(1))
    return result.scalar_one_or_none()


async def _find_recent_transfer(
    session: AsyncSession,
    provider: PaymentProvider,
    *,
    snapshot: WalletSnapshot,
    destination: str,
    since: datetime,
    limit: int,
) -> ProviderTransfer | None:
    """Find a transfer that left for this wallet but whose reference was never stored."""

    ledger = LedgerService(session)
    transfers = await provider.list_transfers(destination=destination, limit=limit)
    for transfer in transfers:
        if transfer.failed or transfer.currency != snapshot.currency:
            continue
        if as_utc(transfer.created_at) < since or transfer.amount != snapshot.balance:
            continue
        tagged_wallet = transfer.metadata.get("wallet_id")
        if tagged_wallet is not None and tagged_wallet != str(snapshot.wallet_id):
            continue
        if await ledger.has_entry(transfer.transfer_id):
            continue
        return transfer
    return None


async def _finalize_withdrawal(
    session: AsyncSession,
    wallet: Wallet,
    transfer: ProviderTransfer,
    *,
    destination: str,
) -> bool:
    """Record the transfer locally; the balance write is always the last statement."""

    amount = to_amount(transfer.amount)
    entry = await LedgerService(session).record_entry(
        reference=transfer.transfer_id,
        kind=LedgerEntryKindEnum.DEBIT,
        amount=amount,
        currency=transfer.currency,
        owner=wallet.owner,
        counterparty_to=destination,
        counterparty_from="company_account",
        message=f"Transferred ${amount} to payout account {destination}",
        wallet_id=wallet.id,
    )
    await NotificationService(session).notify(
        recipient=wallet.owner,
        message=f"${amount} has been transferred to your payout account (transfer {transfer.transfer_id}).",
        category=NotificationCategoryEnum.WITHDRAWAL,
    )
    if entry is not None:
        wallet.balance = max(to_amount(wallet.balance) - amount, _ZERO)
    wallet.withdrawal_status = None
    wallet.pending_transfer_ref = None
    await session.commit()
    return entry is not None


async def _withdraw(
    session: AsyncSession,
    wallet: Wallet,
    snapshot: WalletSnapshot,
    *,
    provider: PaymentProvider,
    since: datetime,
    list_limit: int,
) -> str:
    log = stage_logger(_STAGE.value)
    wallet_id = str(snapshot.wallet_id)

    destination = await _payout_destination(session, snapshot.owner)
    if not destination:
        log.error("Payout account not found for wallet owner; skipping", wallet_id=wallet_id, owner=snapshot.owner)
        return "skipped"

    transfer: ProviderTransfer | None = None
    recovered = False

    if wallet.pending_transfer_ref:
        stored = await provider.retrieve_transfer(wallet.pending_transfer_ref)
        if stored.failed:
            log.warning(
                "Discarding failed pending transfer",
                wallet_id=wallet_id,
                transfer_id=stored.transfer_id,
                status=stored.status,
            )
            wallet.pending_transfer_ref = None
            wallet = await _commit_and_reclaim(session, snapshot.wallet_id)
        else:
            transfer, recovered = stored, True

    if transfer is None:
        found = await _find_recent_transfer(
            session, provider, snapshot=snapshot, destination=destination, since=since, limit=list_limit
        )
        if found is not None:
            log.info("Recovered unrecorded transfer", wallet_id=wallet_id, transfer_id=found.transfer_id)
            wallet.withdrawal_status = WithdrawalStatusEnum.WITHDRAWING
            wallet.pending_transfer_ref = found.transfer_id
            wallet = await _commit_and_reclaim(session, snapshot.wallet_id)
            transfer, recovered = found, True

    if transfer is None:
        sequence = await LedgerService(session).count_withdrawals(snapshot.wallet_id)
        wallet.withdrawal_status = WithdrawalStatusEnum.WITHDRAWING
        wallet = await _commit_and_reclaim(session, snapshot.wallet_id)

        created = await provider.create_transfer(
            destination=destination,
            amount=snapshot.balance,
            currency=snapshot.currency,
            idempotency_key=withdrawal_idempotency_key(snapshot.wallet_id, snapshot.balance, sequence),
            metadata={"wallet_id": wallet_id},
        )
        if created.failed:
            raise PaymentProviderError(
                f"Transfer {created.transfer_id} reported {created.status}", operation="create_transfer"
            )
        log.info("Provider transfer created", wallet_id=wallet_id, transfer_id=created.transfer_id)
        wallet.pending_transfer_ref = created.transfer_id
        wallet = await _commit_and_reclaim(session, snapshot.wallet_id)
        transfer = created

    await _finalize_withdrawal(session, wallet, transfer, destination=destination)
    log.info(
        "Wallet withdrawal recorded",
        wallet_id=wallet_id,
        transfer_id=transfer.transfer_id,
        amount=str(transfer.amount),
        recovered=recovered,
    )
    return "recovered" if recovered else "withdrawn"


async def _handle_failure(session: AsyncSession, snapshot: WalletSnapshot, error: Exception) -> None:
    """Clear an orphaned ``withdrawing`` marker unless a transfer reference anchors it."""

    log = stage_logger(_STAGE.value)
    wallet = await claim_wallet(session, snapshot.wallet_id)
    if wallet is None:
        return
    if wallet.pending_transfer_ref:
        log.warning(
            "Withdrawal left pending for the next sweep",
            wallet_id=str(snapshot.wallet_id),
            transfer_id=wallet.pending_transfer_ref,
        )
        return

    wallet.withdrawal_status = None
    if not (isinstance(error, PaymentProviderError) and error.outcome_unknown):
        sequence = await LedgerService(session).count_withdrawals(snapshot.wallet_id)
        reference = withdrawal_idempotency_key(snapshot.wallet_id, snapshot.balance, sequence)
        await NotificationService(session).notify(
            recipient=snapshot.owner,
            message=withdrawal_failure_message(snapshot.balance, reference),
            category=NotificationCategoryEnum.WITHDRAWAL,
        )
    await session.commit()


async def sweep_wallet_withdrawals(
    *,
    session_factory: SessionFactory,
    provider: PaymentProvider | None = None,
    minimum_balance: Decimal | None = None,
    now: datetime | None = None,
) -> Dict[str, int]:
    """Transfer every eligible wallet balance to its owner's payout account."""

    settings = get_settings()
    log = stage_logger(_STAGE.value)
    provider = provider or StripePaymentProvider.from_settings()
    minimum = to_amount(settings.withdrawal_minimum_balance if minimum_balance is None else minimum_balance)
    reference_time = as_utc(now or datetime.now(timezone.utc))
    since = reference_time - timedelta(hours=settings.withdrawal_transfer_lookback_hours)

    wallet_ids = await _eligible_wallet_ids(session_factory, minimum)
    summary = {"scanned": len(wallet_ids), "withdrawn": 0, "recovered": 0, "skipped": 0, "failed": 0}
    if not wallet_ids:
        log.info("No eligible wallets found for withdrawal")
        return summary

    for wallet_id in wallet_ids:
        async with await open_session(session_factory) as session:
            try:
                wallet = await claim_wallet(session, wallet_id, minimum_balance=minimum)
            except Exception:
                await session.rollback()
                log.exception("Failed to claim wallet", wallet_id=str(wallet_id))
                summary["failed"] += 1
                continue
            if wallet is None:
                log.info("Wallet claimed by another sweep or no longer eligible", wallet_id=str(wallet_id))
                summary["skipped"] += 1
                continue

            snapshot = WalletSnapshot(
                wallet_id=wallet.id,
                owner=wallet.owner,
                currency=wallet.currency,
                balance=to_amount(wallet.balance),
            )
            try:
                outcome = await _withdraw(
                    session,
                    wallet,
                    snapshot,
                    provider=provider,
                    since=since,
                    list_limit=settings.withdrawal_transfer_list_limit,
                )
            except WalletClaimLost:
                await session.rollback()
                log.warning("Lost wallet claim mid-withdrawal; retrying next sweep", wallet_id=str(wallet_id))
                summary["skipped"] += 1
                continue
            except Exception as exc:
                await session.rollback()
                log.exception("Wallet withdrawal failed", wallet_id=str(wallet_id))
                summary["failed"] += 1
                try:
                    await _handle_failure(session, snapshot, exc)
                except Exception:
                    await session.rollback()
                    log.exception("Failed to reset withdrawal marker", wallet_id=str(wallet_id))
                continue

        summary[outcome] += 1

    log.info("Wallet withdrawal sweep complete", **summary)
    return summary


__all__ = [
    "WalletClaimLost",
    "WalletSnapshot",
    "claim_wallet",
    "sweep_wallet_withdrawals",
    "withdrawal_failure_message",
    "withdrawal_idempotency_key",
]

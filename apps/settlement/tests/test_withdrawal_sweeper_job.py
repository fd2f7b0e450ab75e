from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from booking_settlement.jobs import withdrawal_sweeper
from booking_settlement.jobs.withdrawal_sweeper import (
    sweep_wallet_withdrawals,
    withdrawal_failure_message,
    withdrawal_idempotency_key,
)
from booking_settlement.models.ledger import LedgerEntry, LedgerEntryKindEnum
from booking_settlement.models.notification import Notification
from booking_settlement.models.profile import Profile
from booking_settlement.models.wallet import Wallet, WalletStatusEnum, WithdrawalStatusEnum
from booking_settlement.services.payments import PaymentProviderError

NOW = datetime(2026, 10, 17, 2, 30, tzinfo=timezone.utc)
OWNER = "host@example.com"
DESTINATION = "acct_host"


async def _seed(session_factory, *, balance: str = "50.00", with_profile: bool = True, **wallet_fields) -> Wallet:
    async with session_factory() as session:
        if with_profile:
            session.add(Profile(email=OWNER, display_name="Host", stripe_account_id=DESTINATION))
        wallet = Wallet(owner=OWNER, currency="USD", balance=Decimal(balance), **wallet_fields)
        session.add(wallet)
        await session.commit()
        return wallet


async def _wallet(session_factory) -> Wallet:
    async with session_factory() as session:
        return (await session.execute(select(Wallet))).scalar_one()


async def _entries(session_factory) -> list[LedgerEntry]:
    async with session_factory() as session:
        return list((await session.execute(select(LedgerEntry))).scalars().all())


async def _notifications(session_factory) -> list[Notification]:
    async with session_factory() as session:
        return list((await session.execute(select(Notification))).scalars().all())


def _balance(wallet: Wallet) -> Decimal:
    return Decimal(str(wallet.balance)).quantize(Decimal("0.01"))


@pytest.mark.asyncio
async def test_sweep_transfers_balance_and_zeroes_wallet(session_factory, fake_provider) -> None:
    wallet = await _seed(session_factory)

    summary = await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)

    assert summary == {"scanned": 1, "withdrawn": 1, "recovered": 0, "skipped": 0, "failed": 0}
    created = fake_provider.calls_to("create_transfer")
    assert len(created) == 1
    assert created[0]["destination"] == DESTINATION
    assert created[0]["amount"] == Decimal("50.00")
    assert created[0]["idempotency_key"] == withdrawal_idempotency_key(wallet.id, Decimal("50.00"), 0)
    assert created[0]["metadata"] == {"wallet_id": str(wallet.id)}

    stored = await _wallet(session_factory)
    assert _balance(stored) == Decimal("0.00")
    assert stored.withdrawal_status is None
    assert stored.pending_transfer_ref is None

    entries = await _entries(session_factory)
    assert [entry.reference for entry in entries] == ["t_1"]
    assert entries[0].kind == LedgerEntryKindEnum.DEBIT
    assert entries[0].counterparty_to == DESTINATION
    assert len(await _notifications(session_factory)) == 1


@pytest.mark.asyncio
async def test_crash_after_transfer_is_recovered_without_second_transfer(
    session_factory, fake_provider, monkeypatch
) -> None:
    await _seed(session_factory)
    original_finalize = withdrawal_sweeper._finalize_withdrawal

    async def crash(*args, **kwargs):
        raise RuntimeError("process killed before local commit")

    monkeypatch.setattr(withdrawal_sweeper, "_finalize_withdrawal", crash)
    first = await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)

    assert first["failed"] == 1
    mid_flight = await _wallet(session_factory)
    assert mid_flight.withdrawal_status == WithdrawalStatusEnum.WITHDRAWING
    assert mid_flight.pending_transfer_ref == "t_1"
    assert _balance(mid_flight) == Decimal("50.00")
    assert await _entries(session_factory) == []

    monkeypatch.setattr(withdrawal_sweeper, "_finalize_withdrawal", original_finalize)
    second = await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)

    assert second["recovered"] == 1
    assert len(fake_provider.calls_to("create_transfer")) == 1
    assert [call["transfer_id"] for call in fake_provider.calls_to("retrieve_transfer")] == ["t_1"]
    stored = await _wallet(session_factory)
    assert _balance(stored) == Decimal("0.00")
    assert stored.withdrawal_status is None
    assert stored.pending_transfer_ref is None
    assert [entry.reference for entry in await _entries(session_factory)] == ["t_1"]


@pytest.mark.asyncio
async def test_seeded_mid_flight_wallet_completes_locally(session_factory, fake_provider) -> None:
    fake_provider.add_transfer(destination=DESTINATION, amount=Decimal("30.00"), created_at=NOW - timedelta(days=5))
    await _seed(
        session_factory,
        balance="30.00",
        withdrawal_status=WithdrawalStatusEnum.WITHDRAWING,
        pending_transfer_ref="t_1",
    )

    summary = await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)

    assert summary["recovered"] == 1
    assert fake_provider.calls_to("create_transfer") == []
    stored = await _wallet(session_factory)
    assert _balance(stored) == Decimal("0.00")
    assert stored.withdrawal_status is None
    assert stored.pending_transfer_ref is None
    assert [entry.reference for entry in await _entries(session_factory)] == ["t_1"]


@pytest.mark.asyncio
async def test_unrecorded_recent_transfer_is_found_by_search(session_factory, fake_provider) -> None:
    wallet = await _seed(session_factory, balance="30.00")
    fake_provider.add_transfer(
        destination=DESTINATION,
        amount=Decimal("30.00"),
        created_at=NOW - timedelta(hours=1),
        metadata={"wallet_id": str(wallet.id)},
    )

    summary = await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)

    assert summary["recovered"] == 1
    assert fake_provider.calls_to("create_transfer") == []
    stored = await _wallet(session_factory)
    assert _balance(stored) == Decimal("0.00")
    assert [entry.reference for entry in await _entries(session_factory)] == ["t_1"]


@pytest.mark.asyncio
async def test_search_ignores_stale_mismatched_and_recorded_transfers(session_factory, fake_provider) -> None:
    wallet = await _seed(session_factory, balance="30.00")
    fake_provider.add_transfer(destination=DESTINATION, amount=Decimal("30.00"), created_at=NOW - timedelta(hours=72))
    fake_provider.add_transfer(destination=DESTINATION, amount=Decimal("29.99"), created_at=NOW - timedelta(hours=1))
    fake_provider.add_transfer(
        destination=DESTINATION,
        amount=Decimal("30.00"),
        created_at=NOW - timedelta(hours=1),
        metadata={"wallet_id": "another-wallet"},
    )
    fake_provider.add_transfer(
        destination=DESTINATION, amount=Decimal("30.00"), created_at=NOW - timedelta(hours=2), status="reversed"
    )
    recorded = fake_provider.add_transfer(
        destination=DESTINATION, amount=Decimal("30.00"), created_at=NOW - timedelta(hours=3)
    )
    async with session_factory() as session:
        session.add(
            LedgerEntry(
                reference=recorded.transfer_id,
                kind=LedgerEntryKindEnum.DEBIT,
                amount=Decimal("30.00"),
                currency="USD",
                owner=OWNER,
                counterparty_to=DESTINATION,
                counterparty_from="company_account",
                wallet_id=wallet.id,
            )
        )
        await session.commit()

    summary = await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)

    assert summary["withdrawn"] == 1
    created = fake_provider.calls_to("create_transfer")
    assert len(created) == 1
    assert created[0]["idempotency_key"] == withdrawal_idempotency_key(wallet.id, Decimal("30.00"), 1)
    assert _balance(await _wallet(session_factory)) == Decimal("0.00")


@pytest.mark.asyncio
async def test_failed_pending_transfer_is_discarded_and_replaced(session_factory, fake_provider) -> None:
    fake_provider.add_transfer(
        destination=DESTINATION, amount=Decimal("30.00"), created_at=NOW - timedelta(hours=1), status="reversed"
    )
    await _seed(
        session_factory,
        balance="30.00",
        withdrawal_status=WithdrawalStatusEnum.WITHDRAWING,
        pending_transfer_ref="t_1",
    )

    summary = await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)

    assert summary["withdrawn"] == 1
    assert len(fake_provider.calls_to("create_transfer")) == 1
    stored = await _wallet(session_factory)
    assert _balance(stored) == Decimal("0.00")
    assert stored.pending_transfer_ref is None
    assert [entry.reference for entry in await _entries(session_factory)] == ["t_2"]


@pytest.mark.asyncio
async def test_transfer_failure_clears_marker_and_notifies(session_factory, fake_provider) -> None:
    wallet = await _seed(session_factory)
    fake_provider.fail_on(
        "create_transfer", PaymentProviderError("insufficient platform balance", operation="create_transfer")
    )

    first = await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)
    second = await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)

    assert first["failed"] == 1
    assert second["failed"] == 1
    stored = await _wallet(session_factory)
    assert _balance(stored) == Decimal("50.00")
    assert stored.withdrawal_status is None
    assert stored.pending_transfer_ref is None
    assert await _entries(session_factory) == []
    notifications = await _notifications(session_factory)
    assert [item.message for item in notifications] == [
        withdrawal_failure_message(Decimal("50.00"), withdrawal_idempotency_key(wallet.id, Decimal("50.00"), 0))
    ]


@pytest.mark.asyncio
async def test_unknown_transfer_outcome_is_resolved_next_run(session_factory, fake_provider) -> None:
    wallet = await _seed(session_factory)
    fake_provider.fail_on(
        "create_transfer",
        PaymentProviderError("read timeout", operation="create_transfer", outcome_unknown=True),
    )

    first = await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)

    assert first["failed"] == 1
    stored = await _wallet(session_factory)
    assert stored.withdrawal_status is None
    assert await _notifications(session_factory) == []

    # The timed-out request actually reached the provider.
    fake_provider.clear_failure("create_transfer")
    fake_provider.add_transfer(
        destination=DESTINATION,
        amount=Decimal("50.00"),
        created_at=NOW - timedelta(minutes=5),
        metadata={"wallet_id": str(wallet.id)},
    )
    second = await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)

    assert second["recovered"] == 1
    assert len(fake_provider.calls_to("create_transfer")) == 1
    assert _balance(await _wallet(session_factory)) == Decimal("0.00")


@pytest.mark.asyncio
async def test_wallet_without_payout_account_is_skipped(session_factory, fake_provider) -> None:
    await _seed(session_factory, with_profile=False)

    summary = await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)

    assert summary["skipped"] == 1
    assert fake_provider.calls == []
    stored = await _wallet(session_factory)
    assert _balance(stored) == Decimal("50.00")
    assert stored.withdrawal_status is None


@pytest.mark.asyncio
async def test_ineligible_wallets_are_not_selected(session_factory, fake_provider) -> None:
    async with session_factory() as session:
        session.add(Wallet(owner="low@example.com", currency="USD", balance=Decimal("9.99")))
        session.add(
            Wallet(owner="frozen@example.com", currency="USD", balance=Decimal("80.00"), status=WalletStatusEnum.FROZEN)
        )
        await session.commit()

    summary = await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)

    assert summary["scanned"] == 0
    assert fake_provider.calls == []


@pytest.mark.asyncio
async def test_successive_withdrawals_use_distinct_idempotency_keys(session_factory, fake_provider) -> None:
    wallet = await _seed(session_factory, balance="20.00")

    await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)
    async with session_factory() as session:
        stored = await session.get(Wallet, wallet.id)
        stored.balance = Decimal("20.00")
        await session.commit()
    await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)

    keys = [call["idempotency_key"] for call in fake_provider.calls_to("create_transfer")]
    assert keys == [
        withdrawal_idempotency_key(wallet.id, Decimal("20.00"), 0),
        withdrawal_idempotency_key(wallet.id, Decimal("20.00"), 1),
    ]
    assert sorted(entry.reference for entry in await _entries(session_factory)) == ["t_1", "t_2"]
    assert _balance(await _wallet(session_factory)) == Decimal("0.00")


@pytest.mark.asyncio
async def test_rerun_after_success_is_a_noop(session_factory, fake_provider) -> None:
    await _seed(session_factory)

    await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)
    rerun = await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)

    assert rerun["scanned"] == 0
    assert len(await _entries(session_factory)) == 1
    assert len(await _notifications(session_factory)) == 1


@pytest.mark.asyncio
async def test_failures_of_separate_withdrawals_are_each_reported(session_factory, fake_provider) -> None:
    wallet = await _seed(session_factory)
    declined = PaymentProviderError("insufficient platform balance", operation="create_transfer")

    fake_provider.fail_on("create_transfer", declined)
    await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)
    fake_provider.clear_failure("create_transfer")
    await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)
    async with session_factory() as session:
        stored = await session.get(Wallet, wallet.id)
        stored.balance = Decimal("50.00")
        await session.commit()
    fake_provider.fail_on("create_transfer", declined)
    await sweep_wallet_withdrawals(session_factory=session_factory, provider=fake_provider, now=NOW)

    failures = [
        withdrawal_failure_message(Decimal("50.00"), withdrawal_idempotency_key(wallet.id, Decimal("50.00"), sequence))
        for sequence in (0, 1)
    ]
    messages = [item.message for item in await _notifications(session_factory)]
    assert sorted(message for message in messages if message in failures) == sorted(failures)
    assert len(messages) == 3

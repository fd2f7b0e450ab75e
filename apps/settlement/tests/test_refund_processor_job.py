from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from booking_settlement.jobs.refund_processor import (
    process_refunds,
    refund_failure_message,
    refund_idempotency_key,
    refund_notification_message,
)
from booking_settlement.models.booking import Booking, BookingOutcomeEnum, SettlementStatusEnum
from booking_settlement.models.ledger import LedgerEntry
from booking_settlement.models.notification import Notification, NotificationCategoryEnum
from booking_settlement.models.wallet import Wallet
from booking_settlement.services.payments import PaymentProviderError


async def _add_refund_booking(session_factory, **overrides) -> Booking:
    values = {
        "paid": True,
        "outcome": BookingOutcomeEnum.DECLINED,
        "settlement_status": SettlementStatusEnum.NEEDS_REFUND,
        "starts_at": datetime(2026, 10, 16, 9, 0, tzinfo=timezone.utc),
        "amount": Decimal("25.00"),
        "host": "host@example.com",
        "participant": "guest@example.com",
        "payment_capture_ref": "pi_200",
        "topic": "Mock interview",
    }
    values.update(overrides)
    async with session_factory() as session:
        booking = Booking(**values)
        session.add(booking)
        await session.commit()
        return booking


async def _state(session_factory):
    async with session_factory() as session:
        booking = (await session.execute(select(Booking))).scalar_one()
        entries = (await session.execute(select(LedgerEntry))).scalars().all()
        notifications = (await session.execute(select(Notification))).scalars().all()
        wallets = (await session.execute(select(Wallet))).scalars().all()
    return booking, entries, notifications, wallets


@pytest.mark.asyncio
async def test_refund_created_and_booking_closed(session_factory, fake_provider) -> None:
    booking = await _add_refund_booking(session_factory)

    summary = await process_refunds(session_factory=session_factory, provider=fake_provider)

    assert summary == {"scanned": 1, "refunded": 1, "reused": 0, "failed": 0}
    created = fake_provider.calls_to("create_refund")
    assert len(created) == 1
    assert created[0]["payment_ref"] == "pi_200"
    assert created[0]["amount"] == Decimal("25.00")
    assert created[0]["idempotency_key"] == refund_idempotency_key(booking.id)

    stored, entries, notifications, wallets = await _state(session_factory)
    assert stored.settlement_status == SettlementStatusEnum.REFUNDED
    assert stored.outcome == BookingOutcomeEnum.PASSED
    assert [entry.reference for entry in entries] == ["re_1"]
    assert entries[0].owner == "guest@example.com"
    assert [item.message for item in notifications] == [
        refund_notification_message(Decimal("25.00"), "Mock interview", "re_1")
    ]
    assert notifications[0].category == NotificationCategoryEnum.REFUND
    assert wallets == []


@pytest.mark.asyncio
async def test_existing_refund_is_reused_after_crash(session_factory, fake_provider) -> None:
    await _add_refund_booking(session_factory, settlement_status=SettlementStatusEnum.REFUNDING)
    fake_provider.add_refund("pi_200", status="pending")

    summary = await process_refunds(session_factory=session_factory, provider=fake_provider)

    assert summary["refunded"] == 1
    assert summary["reused"] == 1
    assert fake_provider.calls_to("create_refund") == []
    stored, entries, _, _ = await _state(session_factory)
    assert stored.settlement_status == SettlementStatusEnum.REFUNDED
    assert [entry.reference for entry in entries] == ["re_1"]


@pytest.mark.asyncio
async def test_failed_prior_refund_is_not_reused(session_factory, fake_provider) -> None:
    await _add_refund_booking(session_factory)
    fake_provider.add_refund("pi_200", status="failed")

    summary = await process_refunds(session_factory=session_factory, provider=fake_provider)

    assert summary["refunded"] == 1
    assert len(fake_provider.calls_to("create_refund")) == 1
    _, entries, _, _ = await _state(session_factory)
    assert [entry.reference for entry in entries] == ["re_2"]


@pytest.mark.asyncio
async def test_provider_failure_notifies_and_keeps_refunding(session_factory, fake_provider) -> None:
    booking = await _add_refund_booking(session_factory)
    fake_provider.fail_on("create_refund", PaymentProviderError("card_declined", operation="create_refund"))

    first = await process_refunds(session_factory=session_factory, provider=fake_provider)
    second = await process_refunds(session_factory=session_factory, provider=fake_provider)

    assert first["failed"] == 1
    assert second["failed"] == 1
    stored, entries, notifications, _ = await _state(session_factory)
    assert stored.settlement_status == SettlementStatusEnum.REFUNDING
    assert entries == []
    assert [item.message for item in notifications] == [refund_failure_message("Mock interview", booking.id)]


@pytest.mark.asyncio
async def test_declined_refund_status_is_a_failure(session_factory, fake_provider) -> None:
    await _add_refund_booking(session_factory)
    fake_provider.next_refund_status = "failed"

    summary = await process_refunds(session_factory=session_factory, provider=fake_provider)

    assert summary["failed"] == 1
    stored, entries, notifications, _ = await _state(session_factory)
    assert stored.settlement_status == SettlementStatusEnum.REFUNDING
    assert entries == []
    assert len(notifications) == 1


@pytest.mark.asyncio
async def test_unknown_outcome_is_retried_without_failure_notice(session_factory, fake_provider) -> None:
    await _add_refund_booking(session_factory)
    fake_provider.fail_on(
        "create_refund",
        PaymentProviderError("read timeout", operation="create_refund", outcome_unknown=True),
    )

    summary = await process_refunds(session_factory=session_factory, provider=fake_provider)

    assert summary["failed"] == 1
    stored, _, notifications, _ = await _state(session_factory)
    assert stored.settlement_status == SettlementStatusEnum.REFUNDING
    assert notifications == []

    fake_provider.clear_failure("create_refund")
    retry = await process_refunds(session_factory=session_factory, provider=fake_provider)

    assert retry["refunded"] == 1
    stored, entries, notifications, _ = await _state(session_factory)
    assert stored.settlement_status == SettlementStatusEnum.REFUNDED
    assert len(entries) == 1
    assert len(notifications) == 1


@pytest.mark.asyncio
async def test_refund_lookup_error_skips_booking_for_this_run(session_factory, fake_provider) -> None:
    await _add_refund_booking(session_factory)
    fake_provider.fail_on("list_refunds")

    summary = await process_refunds(session_factory=session_factory, provider=fake_provider)

    assert summary["failed"] == 1
    assert fake_provider.calls_to("create_refund") == []
    stored, _, notifications, _ = await _state(session_factory)
    assert stored.settlement_status == SettlementStatusEnum.REFUNDING
    assert notifications == []


@pytest.mark.asyncio
async def test_rerun_after_refund_creates_no_duplicates(session_factory, fake_provider) -> None:
    await _add_refund_booking(session_factory)

    await process_refunds(session_factory=session_factory, provider=fake_provider)
    rerun = await process_refunds(session_factory=session_factory, provider=fake_provider)

    assert rerun["scanned"] == 0
    _, entries, notifications, _ = await _state(session_factory)
    assert len(entries) == 1
    assert len(notifications) == 1


@pytest.mark.asyncio
async def test_identical_refunds_each_notify_the_participant(session_factory, fake_provider) -> None:
    await _add_refund_booking(session_factory, payment_capture_ref="pi_201")
    await _add_refund_booking(session_factory, payment_capture_ref="pi_202")

    summary = await process_refunds(session_factory=session_factory, provider=fake_provider)

    assert summary["refunded"] == 2
    async with session_factory() as session:
        notifications = (await session.execute(select(Notification))).scalars().all()
    assert sorted(item.message for item in notifications) == [
        refund_notification_message(Decimal("25.00"), "Mock interview", "re_1"),
        refund_notification_message(Decimal("25.00"), "Mock interview", "re_2"),
    ]


@pytest.mark.asyncio
async def test_failures_for_identical_bookings_are_reported_separately(session_factory, fake_provider) -> None:
    first = await _add_refund_booking(session_factory, payment_capture_ref="pi_203")
    second = await _add_refund_booking(session_factory, payment_capture_ref="pi_204")
    fake_provider.fail_on("create_refund", PaymentProviderError("card_declined", operation="create_refund"))

    await process_refunds(session_factory=session_factory, provider=fake_provider)
    await process_refunds(session_factory=session_factory, provider=fake_provider)

    async with session_factory() as session:
        notifications = (await session.execute(select(Notification))).scalars().all()
    assert sorted(item.message for item in notifications) == sorted(
        [refund_failure_message("Mock interview", first.id), refund_failure_message("Mock interview", second.id)]
    )

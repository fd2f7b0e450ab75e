"""Stage B: verify capture, credit the host wallet, and close the booking."""

from __future__ import annotations

from typing import Dict

from booking_settlement.core.logging import stage_logger
from booking_settlement.core.settings import get_settings
from booking_settlement.models.booking import SettlementStatusEnum
from booking_settlement.models.notification import NotificationCategoryEnum
from booking_settlement.services.bookings import SettlementStage, SettlementStateMachine
from booking_settlement.services.ledger import LedgerService, to_amount
from booking_settlement.services.notifications import NotificationService
from booking_settlement.services.payments import (
    CAPTURE_SUCCEEDED,
    PaymentProvider,
    StripePaymentProvider,
)

from .common import SessionFactory, eligible_booking_ids, lock_booking, open_session

_STAGE = SettlementStage.SETTLEMENT_PROCESSOR


def settlement_reference(ledger_ref: str | None, booking_id: object) -> str:
    return f"to_wallet_{ledger_ref or booking_id}"


def settlement_notification_message(amount: object, topic: str, booking_ref: object) -> str:
    return f"You have been credited ${amount} for booking completion: {topic} (booking {booking_ref})"


async def process_settlements(
    *,
    session_factory: SessionFactory,
    provider: PaymentProvider | None = None,
    currency: str | None = None,
) -> Dict[str, int]:
    """Credit hosts for bookings whose original payment is confirmed captured."""

    settings = get_settings()
    log = stage_logger(_STAGE.value)
    provider = provider or StripePaymentProvider.from_settings()
    wallet_currency = (currency or settings.settlement_currency).upper()
    machine = SettlementStateMachine()

    booking_ids = await eligible_booking_ids(session_factory, [SettlementStatusEnum.PROCESSING])
    summary = {"scanned": len(booking_ids), "completed": 0, "capture_failed": 0, "already_credited": 0, "failed": 0}
    if not booking_ids:
        log.info("No bookings awaiting settlement")
        return summary

    for booking_id in booking_ids:
        async with await open_session(session_factory) as session:
            try:
                booking = await lock_booking(session, booking_id, [SettlementStatusEnum.PROCESSING])
                if booking is None:
                    continue
                capture_ref = booking.payment_capture_ref

                # The capture check gates every ledger write below.
                capture_status = "missing"
                if capture_ref:
                    capture_status = await provider.retrieve_capture_status(capture_ref)

                if capture_status != CAPTURE_SUCCEEDED:
                    machine.transition(booking, SettlementStatusEnum.CAPTURE_FAILED, stage=_STAGE)
                    await session.commit()
                    log.error(
                        "Payment capture not confirmed; booking needs manual review",
                        booking_id=str(booking_id),
                        capture_status=capture_status,
                    )
                    summary["capture_failed"] += 1
                    continue

                amount = to_amount(booking.amount)
                topic = booking.topic or ""
                credit = await LedgerService(session).credit_wallet(
                    owner=booking.host,
                    currency=wallet_currency,
                    amount=amount,
                    reference=settlement_reference(booking.ledger_ref, booking.id),
                    message=f"Credited ${amount} for booking completion: {topic}",
                    booking_id=booking.id,
                )
                await NotificationService(session).notify(
                    recipient=booking.host,
                    message=settlement_notification_message(amount, topic, booking.ledger_ref or booking.id),
                    category=NotificationCategoryEnum.SETTLEMENT,
                )
                machine.transition(booking, SettlementStatusEnum.COMPLETED, stage=_STAGE)
                await session.commit()
            except Exception:
                await session.rollback()
                log.exception("Failed to settle booking", booking_id=str(booking_id))
                summary["failed"] += 1
                continue

        if credit.applied:
            summary["completed"] += 1
        else:
            summary["already_credited"] += 1
        log.info(
            "Booking settled",
            booking_id=str(booking_id),
            wallet_id=str(credit.wallet_id),
            credited=credit.applied,
        )

    log.info("Settlement processing complete", **summary)
    return summary


__all__ = ["process_settlements", "settlement_notification_message", "settlement_reference"]

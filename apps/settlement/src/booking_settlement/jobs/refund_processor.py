"""Stage C: refund participants for bookings that will not be paid out."""

from __future__ import annotations

from decimal import Decimal
from typing import Dict
from uuid import UUID

from booking_settlement.core.logging import stage_logger
from booking_settlement.core.settings import get_settings
from booking_settlement.models.booking import BookingOutcomeEnum, SettlementStatusEnum
from booking_settlement.models.ledger import LedgerEntryKindEnum
from booking_settlement.models.notification import NotificationCategoryEnum
from booking_settlement.services.bookings import SettlementStage, SettlementStateMachine
from booking_settlement.services.ledger import LedgerService, to_amount
from booking_settlement.services.notifications import NotificationService
from booking_settlement.services.payments import (
    FAILED_REFUND_STATUSES,
    REUSABLE_REFUND_STATUSES,
    PaymentProvider,
    PaymentProviderError,
    ProviderRefund,
    StripePaymentProvider,
)

from .common import SessionFactory, eligible_booking_ids, lock_booking, open_session

_STAGE = SettlementStage.REFUND_PROCESSOR
_REFUNDABLE = [SettlementStatusEnum.NEEDS_REFUND, SettlementStatusEnum.REFUNDING]


def refund_idempotency_key(booking_id: UUID) -> str:
    return f"booking-refund:{booking_id}"


def refund_failure_message(topic: str, booking_id: UUID) -> str:
    return f"Refund failed for booking: {topic} (booking {booking_id}). Please contact support."


def refund_notification_message(amount: Decimal, topic: str, refund_id: str) -> str:
    return f"You have been refunded ${amount} for booking cancellation: {topic} (refund {refund_id})"


async def _notify_failure(
    session_factory: SessionFactory, *, recipient: str, topic: str, booking_id: UUID
) -> None:
    async with await open_session(session_factory) as session:
        await NotificationService(session).notify(
            recipient=recipient,
            message=refund_failure_message(topic, booking_id),
            category=NotificationCategoryEnum.REFUND,
        )
        await session.commit()


async def _finalize_refund(
    session_factory: SessionFactory,
    *,
    booking_id: UUID,
    refund: ProviderRefund,
    amount: Decimal,
    participant: str,
    topic: str,
) -> bool:
    """Record the refund, notify the participant, and close the booking atomically."""

    machine = SettlementStateMachine()
    async with await open_session(session_factory) as session:
        booking = await lock_booking(session, booking_id, [SettlementStatusEnum.REFUNDING])
        if booking is None:
            return False
        await LedgerService(session).record_entry(
            reference=refund.refund_id,
            kind=LedgerEntryKindEnum.CREDIT,
            amount=amount,
            currency=refund.currency,
            owner=participant,
            counterparty_to=participant,
            counterparty_from="system",
            message=f"Refunded ${amount} for booking cancellation: {topic}",
            booking_id=booking_id,
        )
        await NotificationService(session).notify(
            recipient=participant,
            message=refund_notification_message(amount, topic, refund.refund_id),
            category=NotificationCategoryEnum.REFUND,
        )
        machine.transition(booking, SettlementStatusEnum.REFUNDED, stage=_STAGE)
        booking.outcome = BookingOutcomeEnum.PASSED
        await session.commit()
    return True


async def process_refunds(
    *,
    session_factory: SessionFactory,
    provider: PaymentProvider | None = None,
    lookup_limit: int | None = None,
) -> Dict[str, int]:
    """Issue or reuse provider refunds and close refunded bookings.

    The booking is moved to ``refunding`` before any provider call. A booking
    left there by a crash is picked up again and its existing provider refund is
    looked up before a new one is requested.
    """

    settings = get_settings()
    log = stage_logger(_STAGE.value)
    provider = provider or StripePaymentProvider.from_settings()
    limit = lookup_limit or settings.refund_lookup_limit
    machine = SettlementStateMachine()

    booking_ids = await eligible_booking_ids(session_factory, _REFUNDABLE)
    summary = {"scanned": len(booking_ids), "refunded": 0, "reused": 0, "failed": 0}
    if not booking_ids:
        log.info("No bookings awaiting refund")
        return summary

    for booking_id in booking_ids:
        async with await open_session(session_factory) as session:
            try:
                booking = await lock_booking(session, booking_id, _REFUNDABLE)
                if booking is None:
                    continue
                machine.transition(booking, SettlementStatusEnum.REFUNDING, stage=_STAGE)
                amount = to_amount(booking.amount)
                participant = booking.participant
                topic = booking.topic or ""
                payment_ref = booking.payment_capture_ref
                await session.commit()
            except Exception:
                await session.rollback()
                log.exception("Failed to mark booking as refunding", booking_id=str(booking_id))
                summary["failed"] += 1
                continue

        log.info("Booking marked as refunding", booking_id=str(booking_id), amount=str(amount))

        refund: ProviderRefund | None = None
        reused = False
        try:
            if not payment_ref:
                raise PaymentProviderError("Booking has no payment reference to refund", operation="create_refund")

            try:
                existing = await provider.list_refunds(payment_ref=payment_ref, limit=limit)
            except Exception:
                log.exception("Could not check existing refunds; retrying next run", booking_id=str(booking_id))
                summary["failed"] += 1
                continue

            refund = next((item for item in existing if item.status in REUSABLE_REFUND_STATUSES), None)
            reused = refund is not None
            if refund is None:
                refund = await provider.create_refund(
                    payment_ref=payment_ref,
                    amount=amount,
                    idempotency_key=refund_idempotency_key(booking_id),
                    metadata={"booking_id": str(booking_id)},
                )
                log.info("Provider refund created", booking_id=str(booking_id), refund_id=refund.refund_id)
            else:
                log.info("Existing provider refund found", booking_id=str(booking_id), refund_id=refund.refund_id)

            if refund.status in FAILED_REFUND_STATUSES:
                raise PaymentProviderError(
                    f"Refund {refund.refund_id} reported {refund.status}: {refund.failure_reason or 'no reason'}",
                    operation="create_refund",
                )
        except PaymentProviderError as exc:
            summary["failed"] += 1
            log.error("Refund failed", booking_id=str(booking_id), error=str(exc), outcome_unknown=exc.outcome_unknown)
            if exc.outcome_unknown:
                continue
            try:
                await _notify_failure(session_factory, recipient=participant, topic=topic, booking_id=booking_id)
            except Exception:
                log.exception("Failed to record refund failure notification", booking_id=str(booking_id))
            continue
        except Exception:
            summary["failed"] += 1
            log.exception("Unexpected refund error", booking_id=str(booking_id))
            continue

        try:
            finalized = await _finalize_refund(
                session_factory,
                booking_id=booking_id,
                refund=refund,
                amount=amount,
                participant=participant,
                topic=topic,
            )
        except Exception:
            log.exception("Failed to record refund locally; retrying next run", booking_id=str(booking_id))
            summary["failed"] += 1
            continue

        if not finalized:
            continue
        summary["refunded"] += 1
        if reused:
            summary["reused"] += 1
        log.info("Booking refunded", booking_id=str(booking_id), refund_id=refund.refund_id)

    log.info("Refund processing complete", **summary)
    return summary


__all__ = [
    "process_refunds",
    "refund_failure_message",
    "refund_idempotency_key",
    "refund_notification_message",
]

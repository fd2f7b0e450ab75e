"""Stage A: decide whether paid bookings head toward payout or refund."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict

from booking_settlement.core.logging import stage_logger
from booking_settlement.core.settings import get_settings
from booking_settlement.models.booking import (
    Booking,
    BookingOutcomeEnum,
    MeetingStatusEnum,
    SettlementStatusEnum,
)
from booking_settlement.services.bookings import SettlementStage, SettlementStateMachine

from .common import SessionFactory, as_utc, eligible_booking_ids, lock_booking, open_session

_ATTENDED_MEETING_STATUSES = {MeetingStatusEnum.CREATED, MeetingStatusEnum.COMPLETED}


def decide_disposition(
    booking: Booking, *, now: datetime, grace: timedelta
) -> SettlementStatusEnum | None:
    """Return the next settlement status for an unsettled booking, or ``None`` to wait."""

    if booking.outcome == BookingOutcomeEnum.DECLINED:
        return SettlementStatusEnum.NEEDS_REFUND
    if booking.joined_by and booking.meeting_status in _ATTENDED_MEETING_STATUSES:
        return SettlementStatusEnum.PROCESSING
    if now - as_utc(booking.starts_at) > grace:
        return SettlementStatusEnum.NEEDS_REFUND
    return None


async def resolve_bookings(
    *,
    session_factory: SessionFactory,
    now: datetime | None = None,
    grace_hours: float | None = None,
) -> Dict[str, int]:
    """Move unsettled paid bookings to ``processing`` or ``needs_refund``.

    Each booking is decided and written in its own transaction so one bad row
    never blocks the rest of the batch.
    """

    settings = get_settings()
    log = stage_logger(SettlementStage.BOOKING_RESOLVER.value)
    reference_time = as_utc(now or datetime.now(timezone.utc))
    grace = timedelta(hours=settings.refund_grace_hours if grace_hours is None else grace_hours)
    machine = SettlementStateMachine()

    booking_ids = await eligible_booking_ids(session_factory, [SettlementStatusEnum.UNAVAILABLE])
    summary = {"scanned": len(booking_ids), "to_processing": 0, "to_refund": 0, "unchanged": 0, "failed": 0}
    if not booking_ids:
        log.info("No unsettled paid bookings found")
        return summary

    for booking_id in booking_ids:
        async with await open_session(session_factory) as session:
            try:
                booking = await lock_booking(session, booking_id, [SettlementStatusEnum.UNAVAILABLE])
                if booking is None:
                    summary["unchanged"] += 1
                    continue

                target = decide_disposition(booking, now=reference_time, grace=grace)
                if target is None:
                    log.debug("Booking still inside grace window", booking_id=str(booking_id))
                    summary["unchanged"] += 1
                    continue

                if target == SettlementStatusEnum.PROCESSING:
                    booking.meeting_status = MeetingStatusEnum.COMPLETED
                machine.transition(booking, target, stage=SettlementStage.BOOKING_RESOLVER)
                await session.commit()
            except Exception:
                await session.rollback()
                log.exception("Failed to resolve booking", booking_id=str(booking_id))
                summary["failed"] += 1
                continue

        if target == SettlementStatusEnum.PROCESSING:
            summary["to_processing"] += 1
        else:
            summary["to_refund"] += 1
        log.info("Resolved booking", booking_id=str(booking_id), settlement_status=target.value)

    log.info("Booking resolution complete", **summary)
    return summary


__all__ = ["decide_disposition", "resolve_bookings"]

"""Helpers shared by the settlement stage jobs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_settlement.models.booking import Booking, SettlementStatusEnum

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    return maybe_session if isinstance(maybe_session, AsyncSession) else await maybe_session


def as_utc(value: datetime) -> datetime:
    """Read naive timestamps (SQLite) as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def eligible_booking_ids(
    session_factory: SessionFactory, statuses: Iterable[SettlementStatusEnum]
) -> list[UUID]:
    """Snapshot the ids of paid bookings currently in ``statuses``."""

    async with await open_session(session_factory) as session:
        stmt = (
            select(Booking.id)
            .where(Booking.settlement_status.in_(list(statuses)), Booking.paid.is_(True))
            .order_by(Booking.created_at)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())


async def lock_booking(
    session: AsyncSession, booking_id: UUID, statuses: Iterable[SettlementStatusEnum]
) -> Booking | None:
    """Lock a booking that is still paid and in ``statuses``, skipping rows held elsewhere."""

    stmt = (
        select(Booking)
        .where(
            Booking.id == booking_id,
            Booking.settlement_status.in_(list(statuses)),
            Booking.paid.is_(True),
        )
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


__all__ = ["SessionFactory", "as_utc", "eligible_booking_ids", "lock_booking", "open_session"]

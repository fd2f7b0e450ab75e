"""Paid meeting bookings and their settlement lifecycle fields."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Enum as SqlEnum, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from booking_settlement.db.base import Base, enum_values


class BookingOutcomeEnum(str, Enum):
    """Host decision on the booking request."""

    ACTIVE = "active"
    DECLINED = "declined"
    PASSED = "passed"


class MeetingStatusEnum(str, Enum):
    CREATED = "created"
    COMPLETED = "completed"
    CANCELED = "canceled"


class SettlementStatusEnum(str, Enum):
    """Pipeline handoff latch; see ``SettlementStateMachine`` for legal edges."""

    UNAVAILABLE = "unavailable"
    PROCESSING = "processing"
    NEEDS_REFUND = "needs_refund"
    REFUNDING = "refunding"
    REFUNDED = "refunded"
    COMPLETED = "completed"
    CAPTURE_FAILED = "capture_failed"


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    paid = Column(Boolean, nullable=False, default=False, server_default="false")
    outcome = Column(
        SqlEnum(BookingOutcomeEnum, name="booking_outcome_enum", values_callable=enum_values),
        nullable=False,
        default=BookingOutcomeEnum.ACTIVE,
        server_default=BookingOutcomeEnum.ACTIVE.value,
    )
    meeting_status = Column(
        SqlEnum(MeetingStatusEnum, name="meeting_status_enum", values_callable=enum_values),
        nullable=False,
        default=MeetingStatusEnum.CREATED,
        server_default=MeetingStatusEnum.CREATED.value,
    )
    settlement_status = Column(
        SqlEnum(SettlementStatusEnum, name="settlement_status_enum", values_callable=enum_values),
        nullable=False,
        default=SettlementStatusEnum.UNAVAILABLE,
        server_default=SettlementStatusEnum.UNAVAILABLE.value,
        index=True,
    )
    joined_by = Column(String, nullable=True)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    host = Column(String, nullable=False, index=True)
    participant = Column(String, nullable=False)
    ledger_ref = Column(String, nullable=True)
    payment_capture_ref = Column(String, nullable=True)
    topic = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

"""Append-only financial records written by the settlement stages."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from booking_settlement.db.base import Base, enum_values


class LedgerEntryKindEnum(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class LedgerEntry(Base):
    """One money movement, keyed by an idempotency ``reference``.

    Rows are never updated or deleted by the pipeline. The unique ``reference``
    is what lets a re-executed stage detect that its write already happened.
    """

    __tablename__ = "ledger_entries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    reference = Column(String, nullable=False, unique=True)
    kind = Column(
        SqlEnum(LedgerEntryKindEnum, name="ledger_entry_kind_enum", values_callable=enum_values),
        nullable=False,
    )
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD", server_default="USD")
    owner = Column(String, nullable=False, index=True)
    counterparty_to = Column(String, nullable=False)
    counterparty_from = Column(String, nullable=False)
    message = Column(Text, nullable=True)
    booking_id = Column(UUID(as_uuid=True), ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True)
    wallet_id = Column(UUID(as_uuid=True), ForeignKey("wallets.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

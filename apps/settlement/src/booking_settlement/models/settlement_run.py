"""Audit rows describing each settlement stage invocation."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Enum as SqlEnum, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from booking_settlement.db.base import Base, enum_values


class SettlementRunStatusEnum(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SettlementRun(Base):
    __tablename__ = "settlement_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    stage = Column(String(64), nullable=False, index=True)
    triggered_by = Column(String(64), nullable=False)
    status = Column(
        SqlEnum(SettlementRunStatusEnum, name="settlement_run_status_enum", values_callable=enum_values),
        nullable=False,
        default=SettlementRunStatusEnum.RUNNING,
        server_default=SettlementRunStatusEnum.RUNNING.value,
    )
    summary_json = Column("summary", JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

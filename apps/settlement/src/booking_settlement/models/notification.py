from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from booking_settlement.db.base import Base, enum_values


class NotificationCategoryEnum(str, Enum):
    SETTLEMENT = "settlement"
    REFUND = "refund"
    WITHDRAWAL = "withdrawal"


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    recipient = Column(String, nullable=False, index=True)
    category = Column(
        SqlEnum(NotificationCategoryEnum, name="notification_category_enum", values_callable=enum_values),
        nullable=False,
    )
    message = Column(Text, nullable=False)
    sender = Column(String, nullable=True)
    url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, Numeric, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from booking_settlement.db.base import Base, enum_values


class WalletStatusEnum(str, Enum):
    ACTIVE = "active"
    FROZEN = "frozen"
    CLOSED = "closed"


class WithdrawalStatusEnum(str, Enum):
    WITHDRAWING = "withdrawing"


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (UniqueConstraint("owner", "currency", name="uq_wallets_owner_currency"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner = Column(String, nullable=False, index=True)
    balance = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    currency = Column(String(3), nullable=False, default="USD", server_default="USD")
    status = Column(
        SqlEnum(WalletStatusEnum, name="wallet_status_enum", values_callable=enum_values),
        nullable=False,
        default=WalletStatusEnum.ACTIVE,
        server_default=WalletStatusEnum.ACTIVE.value,
    )
    # withdrawing + pending_transfer_ref together mark a transfer that left the
    # platform account but has not been reconciled locally yet.
    withdrawal_status = Column(
        SqlEnum(WithdrawalStatusEnum, name="withdrawal_status_enum", values_callable=enum_values),
        nullable=True,
    )
    pending_transfer_ref = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

"""SQLAlchemy models package."""

# Import all models
from .booking import (  # noqa: F401
    Booking,
    BookingOutcomeEnum,
    MeetingStatusEnum,
    SettlementStatusEnum,
)
from .ledger import LedgerEntry, LedgerEntryKindEnum  # noqa: F401
from .notification import Notification, NotificationCategoryEnum  # noqa: F401
from .profile import Profile  # noqa: F401
from .settlement_run import SettlementRun, SettlementRunStatusEnum  # noqa: F401
from .wallet import Wallet, WalletStatusEnum, WithdrawalStatusEnum  # noqa: F401

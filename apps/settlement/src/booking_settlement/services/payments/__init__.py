"""Payment provider integrations used by the settlement stages."""

from .provider import (
    CAPTURE_SUCCEEDED,
    FAILED_REFUND_STATUSES,
    FAILED_TRANSFER_STATUSES,
    REUSABLE_REFUND_STATUSES,
    PaymentProvider,
    PaymentProviderError,
    ProviderRefund,
    ProviderTransfer,
)
from .stripe import StripePaymentProvider

__all__ = [
    "CAPTURE_SUCCEEDED",
    "FAILED_REFUND_STATUSES",
    "FAILED_TRANSFER_STATUSES",
    "REUSABLE_REFUND_STATUSES",
    "PaymentProvider",
    "PaymentProviderError",
    "ProviderRefund",
    "ProviderTransfer",
    "StripePaymentProvider",
]

"""Booking settlement lifecycle services."""

from .state_machine import (
    InvalidSettlementTransitionError,
    SettlementStage,
    SettlementStateError,
    SettlementStateMachine,
    SettlementTransitionOwnershipError,
    UnpaidBookingError,
)

__all__ = [
    "InvalidSettlementTransitionError",
    "SettlementStage",
    "SettlementStateError",
    "SettlementStateMachine",
    "SettlementTransitionOwnershipError",
    "UnpaidBookingError",
]

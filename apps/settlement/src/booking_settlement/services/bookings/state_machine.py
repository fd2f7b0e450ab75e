"""Booking settlement state machine with per-edge stage ownership."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from loguru import logger

from booking_settlement.models.booking import Booking, SettlementStatusEnum


class SettlementStage(str, Enum):
    """Pipeline stages allowed to move a booking along the settlement graph."""

    BOOKING_RESOLVER = "booking_resolver"
    SETTLEMENT_PROCESSOR = "settlement_processor"
    REFUND_PROCESSOR = "refund_processor"
    WITHDRAWAL_SWEEPER = "withdrawal_sweeper"


class SettlementStateError(RuntimeError):
    """Base exception for settlement state machine failures."""


class InvalidSettlementTransitionError(SettlementStateError):
    """Raised when a transition is not an edge of the settlement graph."""

    def __init__(self, current_status: SettlementStatusEnum, requested_status: SettlementStatusEnum) -> None:
        message = f"Cannot transition booking settlement from {current_status.value} to {requested_status.value}"
        super().__init__(message)
        self.current_status = current_status
        self.requested_status = requested_status


class SettlementTransitionOwnershipError(SettlementStateError):
    """Raised when a stage attempts an edge owned by another stage."""

    def __init__(
        self,
        current_status: SettlementStatusEnum,
        requested_status: SettlementStatusEnum,
        stage: SettlementStage,
        owner: SettlementStage,
    ) -> None:
        message = (
            f"{stage.value} may not transition booking settlement from {current_status.value} "
            f"to {requested_status.value}; edge is owned by {owner.value}"
        )
        super().__init__(message)
        self.stage = stage
        self.owner = owner


class UnpaidBookingError(SettlementStateError):
    """Raised when the pipeline is asked to touch a booking that was never paid."""


@dataclass(slots=True)
class SettlementTransition:
    booking_id: object
    from_status: SettlementStatusEnum
    to_status: SettlementStatusEnum
    stage: SettlementStage
    changed: bool


class SettlementStateMachine:
    """Validates and applies settlement status changes on a booking row.

    The machine only mutates the in-session object; the calling stage owns the
    surrounding transaction and decides when to commit.
    """

    _ALLOWED_TRANSITIONS: dict[SettlementStatusEnum, dict[SettlementStatusEnum, SettlementStage]] = {
        SettlementStatusEnum.UNAVAILABLE: {
            SettlementStatusEnum.PROCESSING: SettlementStage.BOOKING_RESOLVER,
            SettlementStatusEnum.NEEDS_REFUND: SettlementStage.BOOKING_RESOLVER,
        },
        SettlementStatusEnum.PROCESSING: {
            SettlementStatusEnum.COMPLETED: SettlementStage.SETTLEMENT_PROCESSOR,
            SettlementStatusEnum.CAPTURE_FAILED: SettlementStage.SETTLEMENT_PROCESSOR,
        },
        SettlementStatusEnum.NEEDS_REFUND: {
            SettlementStatusEnum.REFUNDING: SettlementStage.REFUND_PROCESSOR,
        },
        SettlementStatusEnum.REFUNDING: {
            SettlementStatusEnum.REFUNDED: SettlementStage.REFUND_PROCESSOR,
        },
        SettlementStatusEnum.REFUNDED: {},
        SettlementStatusEnum.COMPLETED: {},
        SettlementStatusEnum.CAPTURE_FAILED: {},
    }

    # Re-entering these states is a no-op so a retried stage can replay its first write.
    _REENTRANT: dict[SettlementStatusEnum, SettlementStage] = {
        SettlementStatusEnum.REFUNDING: SettlementStage.REFUND_PROCESSOR,
    }

    @classmethod
    def allowed_targets(cls, status: SettlementStatusEnum) -> set[SettlementStatusEnum]:
        return set(cls._ALLOWED_TRANSITIONS.get(status, {}))

    @classmethod
    def is_terminal(cls, status: SettlementStatusEnum) -> bool:
        return not cls._ALLOWED_TRANSITIONS.get(status)

    @classmethod
    def edge_owner(
        cls, current_status: SettlementStatusEnum, target_status: SettlementStatusEnum
    ) -> SettlementStage | None:
        return cls._ALLOWED_TRANSITIONS.get(current_status, {}).get(target_status)

    def transition(
        self,
        booking: Booking,
        target_status: SettlementStatusEnum,
        *,
        stage: SettlementStage,
    ) -> SettlementTransition:
        """Move ``booking`` to ``target_status`` if the edge exists and ``stage`` owns it."""

        if not booking.paid:
            raise UnpaidBookingError(f"Booking {booking.id} is not paid and cannot be settled")

        current_status = SettlementStatusEnum(booking.settlement_status)
        if target_status == current_status:
            reentry_owner = self._REENTRANT.get(current_status)
            if reentry_owner is None:
                raise InvalidSettlementTransitionError(current_status, target_status)
            if reentry_owner != stage:
                raise SettlementTransitionOwnershipError(current_status, target_status, stage, reentry_owner)
            return SettlementTransition(
                booking_id=booking.id,
                from_status=current_status,
                to_status=target_status,
                stage=stage,
                changed=False,
            )

        owner = self.edge_owner(current_status, target_status)
        if owner is None:
            raise InvalidSettlementTransitionError(current_status, target_status)
        if owner != stage:
            raise SettlementTransitionOwnershipError(current_status, target_status, stage, owner)

        booking.settlement_status = target_status
        logger.debug(
            "Booking settlement status transitioned",
            booking_id=str(booking.id),
            from_status=current_status.value,
            to_status=target_status.value,
            stage=stage.value,
        )
        return SettlementTransition(
            booking_id=booking.id,
            from_status=current_status,
            to_status=target_status,
            stage=stage,
            changed=True,
        )


__all__ = [
    "InvalidSettlementTransitionError",
    "SettlementStage",
    "SettlementStateError",
    "SettlementStateMachine",
    "SettlementTransition",
    "SettlementTransitionOwnershipError",
    "UnpaidBookingError",
]

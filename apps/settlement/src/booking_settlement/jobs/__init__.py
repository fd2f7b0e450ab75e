"""Settlement pipeline stage entrypoints."""

__all__ = [
    "booking_resolver",
    "refund_processor",
    "settlement_processor",
    "withdrawal_sweeper",
]

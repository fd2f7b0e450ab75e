"""Booking settlement pipeline: resolve, settle, refund, and sweep host wallets."""

__version__ = "0.1.0"

"""Notification service package."""

from .service import NotificationService

__all__ = ["NotificationService"]

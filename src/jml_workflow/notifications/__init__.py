"""Notification channel contract and retrying delivery service."""

from .channel import (
    DeliveryStatus,
    LoggingChannel,
    NotificationChannel,
    NotificationPriority,
    NotificationService,
)

__all__ = [
    "DeliveryStatus",
    "LoggingChannel",
    "NotificationChannel",
    "NotificationPriority",
    "NotificationService",
]

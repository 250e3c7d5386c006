"""Pydantic domain models for the rate alert service."""

from .alerts import (
    AlertCreate,
    AlertDirection,
    AlertTrigger,
    AlertUpdate,
    RateAlert,
)
from .notifications import (
    InboxMessage,
    NotificationChannel,
    NotificationPreference,
    NotificationRecord,
)

__all__ = [
    "AlertCreate",
    "AlertDirection",
    "AlertTrigger",
    "AlertUpdate",
    "RateAlert",
    "InboxMessage",
    "NotificationChannel",
    "NotificationPreference",
    "NotificationRecord",
]

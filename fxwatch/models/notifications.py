from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from fxwatch.services.rates.base import utc_now


class NotificationChannel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    PUSH = "push"


class NotificationPreference(BaseModel):
    # Users without a stored row get in-app only
    in_app_enabled: bool = True
    email_enabled: bool = False
    push_enabled: bool = False

    def enabled_channels(self) -> List[NotificationChannel]:
        channels = []
        if self.in_app_enabled:
            channels.append(NotificationChannel.IN_APP)
        if self.email_enabled:
            channels.append(NotificationChannel.EMAIL)
        if self.push_enabled:
            channels.append(NotificationChannel.PUSH)
        return channels


class NotificationRecord(BaseModel):
    """One delivery attempt on one channel, successful or not."""

    id: Optional[int] = None
    alert_id: int
    user_id: str
    channel: NotificationChannel
    title: str
    message: str
    sent_at: datetime = Field(default_factory=utc_now)
    delivered: bool = True
    error: Optional[str] = None


class InboxMessage(BaseModel):
    id: Optional[int] = None
    user_id: str
    alert_id: Optional[int] = None
    title: str
    message: str
    created_at: datetime = Field(default_factory=utc_now)
    read_at: Optional[datetime] = None

    @property
    def unread(self) -> bool:
        return self.read_at is None

"""Notification fan-out for triggered alerts.

Each enabled channel is attempted independently; one channel failing never
blocks the others. Every attempt, delivered or not, leaves a
NotificationRecord behind.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Protocol

from fxwatch.db.dal import Database
from fxwatch.models import (
    NotificationChannel,
    NotificationPreference,
    NotificationRecord,
    RateAlert,
)
from fxwatch.services.rates.base import display_pair, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationPayload:
    user_id: str
    alert_id: int
    title: str
    message: str


def build_payload(alert: RateAlert, current_rate: float) -> NotificationPayload:
    arrow = "📈" if current_rate > alert.target_rate else "📉"
    message = (
        f"{display_pair(alert.pair)} reached {current_rate:.4f} "
        f"(target: {alert.direction.symbol} {alert.target_rate:.4f})"
    )
    return NotificationPayload(
        user_id=alert.user_id,
        alert_id=alert.id,  # type: ignore[arg-type]
        title=f"{arrow} Rate Alert Triggered",
        message=message,
    )


class ChannelSender(Protocol):
    def deliver(self, payload: NotificationPayload) -> None:
        """Deliver or raise."""


class InAppSender:
    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now):
        self._db = db
        self._clock = clock

    def deliver(self, payload: NotificationPayload) -> None:
        self._db.add_inbox_message(
            payload.user_id,
            payload.title,
            payload.message,
            alert_id=payload.alert_id,
            created_at=self._clock(),
        )


class LogOnlySender:
    """Email and push transports are not wired up; attempts are logged only."""

    def __init__(self, channel: NotificationChannel):
        self.channel = channel

    def deliver(self, payload: NotificationPayload) -> None:
        logger.info(
            "%s notification for user %s: %s",
            self.channel.value,
            payload.user_id,
            payload.message,
            extra={"alert_id": payload.alert_id, "channel": self.channel.value},
        )


class NotificationDispatcher:
    def __init__(
        self,
        db: Database,
        senders: Optional[Mapping[NotificationChannel, ChannelSender]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._db = db
        self._clock = clock
        self._senders: Dict[NotificationChannel, ChannelSender] = {
            NotificationChannel.IN_APP: InAppSender(db, clock),
            NotificationChannel.EMAIL: LogOnlySender(NotificationChannel.EMAIL),
            NotificationChannel.PUSH: LogOnlySender(NotificationChannel.PUSH),
        }
        if senders:
            self._senders.update(senders)

    def dispatch(
        self,
        alert: RateAlert,
        current_rate: float,
        preference: Optional[NotificationPreference] = None,
    ) -> List[NotificationRecord]:
        """Send on every enabled channel and return one record per attempt."""
        preference = preference or NotificationPreference()
        payload = build_payload(alert, current_rate)
        records = []
        for channel in preference.enabled_channels():
            delivered, error = self._attempt(channel, payload)
            record = NotificationRecord(
                alert_id=payload.alert_id,
                user_id=payload.user_id,
                channel=channel,
                title=payload.title,
                message=payload.message,
                sent_at=self._clock(),
                delivered=delivered,
                error=error,
            )
            try:
                record = self._db.add_notification_record(record)
            except sqlite3.Error:
                logger.exception(
                    "failed to persist notification record",
                    extra={"alert_id": payload.alert_id, "channel": channel.value},
                )
            records.append(record)
        return records

    def _attempt(self, channel: NotificationChannel, payload: NotificationPayload):
        sender = self._senders.get(channel)
        if sender is None:
            return False, f"no sender configured for {channel.value}"
        try:
            sender.deliver(payload)
        except Exception as e:  # isolate channels from each other
            logger.warning(
                "delivery failed: %s",
                e,
                extra={"alert_id": payload.alert_id, "channel": channel.value},
            )
            return False, f"{type(e).__name__}: {e}"
        return True, None

"""Data Access Layer for alerts, triggers and notifications.

Responsibilities
----------------
- CRUD helpers for rate alerts, including re-arming on edit.
- The atomic claim that flips an alert to notified exactly once and writes the
  matching audit row in the same transaction.
- Notification preferences, delivery records and the in-app inbox.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
import sqlite3
from typing import Any, Dict, Iterator, List, Optional

from fxwatch.core.errors import AlertNotFoundError
from fxwatch.models import (
    AlertDirection,
    AlertTrigger,
    InboxMessage,
    NotificationPreference,
    NotificationRecord,
    RateAlert,
)
from fxwatch.services.rates.base import utc_now

UTC_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ','now')"
_UNSET = object()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class Database:
    def __init__(self, db_path: Path):
        self.db_path = db_path

    # ------------------------------------------------------------------
    # Connection helpers
    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Connection scoped to one unit of work: commit on success, rollback on error."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Alerts
    def create_alert(
        self,
        user_id: str,
        pair: str,
        target_rate: float,
        direction: AlertDirection,
        active: bool = True,
        created_at: Optional[datetime] = None,
    ) -> RateAlert:
        alert = RateAlert(
            user_id=user_id,
            pair=pair,
            target_rate=target_rate,
            direction=direction,
            active=active,
            created_at=created_at or utc_now(),
        )
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO rate_alerts (user_id, pair, target_rate, direction, active, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    alert.user_id,
                    alert.pair,
                    alert.target_rate,
                    alert.direction.value,
                    int(alert.active),
                    _iso(alert.created_at),
                ),
            )
            alert_id = int(cur.lastrowid)
        return alert.model_copy(update={"id": alert_id})

    def get_alert(self, alert_id: int) -> Optional[RateAlert]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM rate_alerts WHERE id = ?", (alert_id,)).fetchone()
        return RateAlert.from_row(row) if row else None

    def require_alert(self, alert_id: int) -> RateAlert:
        alert = self.get_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert

    def list_alerts(self, user_id: Optional[str] = None, active_only: bool = False) -> List[RateAlert]:
        clauses, params = [], []  # type: ignore[var-annotated]
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if active_only:
            clauses.append("active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM rate_alerts {where} ORDER BY id", params
            ).fetchall()
        return [RateAlert.from_row(r) for r in rows]

    def list_eligible_alerts(self, user_id: Optional[str] = None) -> List[RateAlert]:
        """Alerts still waiting to fire: active and not yet notified."""
        sql = "SELECT * FROM rate_alerts WHERE active = 1 AND notified = 0"
        params: List[Any] = []
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY id", params).fetchall()
        return [RateAlert.from_row(r) for r in rows]

    def update_alert(
        self,
        alert_id: int,
        *,
        pair: Any = _UNSET,
        target_rate: Any = _UNSET,
        direction: Any = _UNSET,
        active: Any = _UNSET,
        rearm: bool = True,
    ) -> RateAlert:
        """Apply a partial edit.

        With ``rearm`` set, changing pair, target or direction, or switching an
        inactive alert back on, clears ``notified`` so the alert can fire again.
        """
        current = self.require_alert(alert_id)
        changes: Dict[str, Any] = {}
        if pair is not _UNSET and pair is not None:
            changes["pair"] = pair
        if target_rate is not _UNSET and target_rate is not None:
            changes["target_rate"] = target_rate
        if direction is not _UNSET and direction is not None:
            changes["direction"] = AlertDirection.parse(direction)
        if active is not _UNSET and active is not None:
            changes["active"] = bool(active)

        # Validate through the model before touching the row
        candidate = RateAlert.model_validate({**current.model_dump(), **changes})
        criteria_changed = (
            candidate.pair != current.pair
            or candidate.target_rate != current.target_rate
            or candidate.direction != current.direction
        )
        reactivated = candidate.active and not current.active
        if rearm and current.notified and (criteria_changed or reactivated):
            candidate = candidate.model_copy(update={"notified": False, "triggered_at": None})

        with self._connect() as conn:
            conn.execute(
                f"""
                UPDATE rate_alerts
                SET pair = ?, target_rate = ?, direction = ?, active = ?,
                    notified = ?, triggered_at = ?, updated_at = ({UTC_NOW_SQL})
                WHERE id = ?
                """,
                (
                    candidate.pair,
                    candidate.target_rate,
                    candidate.direction.value,
                    int(candidate.active),
                    int(candidate.notified),
                    _iso(candidate.triggered_at),
                    alert_id,
                ),
            )
        return candidate

    def delete_alert(self, alert_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM rate_alerts WHERE id = ?", (alert_id,))
            return cur.rowcount > 0

    def claim_alert(
        self, alert_id: int, rate: float, provider_name: str, triggered_at: datetime
    ) -> bool:
        """Flip an eligible alert to notified and record the trigger, atomically.

        Returns False when another worker claimed it first (or it was
        deactivated meanwhile); nothing is written in that case.
        """
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE rate_alerts
                SET notified = 1, triggered_at = ?, updated_at = ({UTC_NOW_SQL})
                WHERE id = ? AND active = 1 AND notified = 0
                """,
                (_iso(triggered_at), alert_id),
            )
            if cur.rowcount != 1:
                return False
            conn.execute(
                """
                INSERT INTO alert_triggers (alert_id, rate, provider_name, triggered_at)
                VALUES (?, ?, ?, ?)
                """,
                (alert_id, rate, provider_name, _iso(triggered_at)),
            )
        return True

    def list_triggers(self, alert_id: int) -> List[AlertTrigger]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM alert_triggers WHERE alert_id = ? ORDER BY id", (alert_id,)
            ).fetchall()
        return [AlertTrigger(**dict(r)) for r in rows]

    def alert_summary(self, user_id: Optional[str] = None) -> Dict[str, int]:
        where, params = ("WHERE user_id = ?", [user_id]) if user_id is not None else ("", [])
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN active = 1 AND notified = 0 THEN 1 ELSE 0 END), 0) AS pending,
                    COALESCE(SUM(notified), 0) AS triggered,
                    COALESCE(SUM(CASE WHEN active = 0 THEN 1 ELSE 0 END), 0) AS inactive
                FROM rate_alerts {where}
                """,
                params,
            ).fetchone()
        return {k: int(row[k]) for k in ("total", "pending", "triggered", "inactive")}

    # ------------------------------------------------------------------
    # Notification preferences
    def get_preferences(self, user_id: str) -> Optional[NotificationPreference]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM notification_preferences WHERE user_id = ?", (user_id,)
            ).fetchone()
        if not row:
            return None
        return NotificationPreference(
            in_app_enabled=bool(row["in_app_enabled"]),
            email_enabled=bool(row["email_enabled"]),
            push_enabled=bool(row["push_enabled"]),
        )

    def set_preferences(self, user_id: str, pref: NotificationPreference) -> NotificationPreference:
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO notification_preferences (user_id, in_app_enabled, email_enabled, push_enabled)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    in_app_enabled = excluded.in_app_enabled,
                    email_enabled = excluded.email_enabled,
                    push_enabled = excluded.push_enabled,
                    updated_at = ({UTC_NOW_SQL})
                """,
                (user_id, int(pref.in_app_enabled), int(pref.email_enabled), int(pref.push_enabled)),
            )
        return pref

    # ------------------------------------------------------------------
    # Notification records
    def add_notification_record(self, record: NotificationRecord) -> NotificationRecord:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO notification_records
                    (alert_id, user_id, channel, title, message, sent_at, delivered, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.alert_id,
                    record.user_id,
                    record.channel.value,
                    record.title,
                    record.message,
                    _iso(record.sent_at),
                    int(record.delivered),
                    record.error,
                ),
            )
            record_id = int(cur.lastrowid)
        return record.model_copy(update={"id": record_id})

    def list_notification_records(
        self, alert_id: Optional[int] = None, user_id: Optional[str] = None
    ) -> List[NotificationRecord]:
        clauses, params = [], []  # type: ignore[var-annotated]
        if alert_id is not None:
            clauses.append("alert_id = ?")
            params.append(alert_id)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM notification_records {where} ORDER BY id", params
            ).fetchall()
        return [
            NotificationRecord(**{**dict(r), "delivered": bool(r["delivered"])}) for r in rows
        ]

    # ------------------------------------------------------------------
    # In-app inbox
    def add_inbox_message(
        self,
        user_id: str,
        title: str,
        message: str,
        alert_id: Optional[int] = None,
        created_at: Optional[datetime] = None,
    ) -> InboxMessage:
        msg = InboxMessage(
            user_id=user_id,
            alert_id=alert_id,
            title=title,
            message=message,
            created_at=created_at or utc_now(),
        )
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO inbox_messages (user_id, alert_id, title, message, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (msg.user_id, msg.alert_id, msg.title, msg.message, _iso(msg.created_at)),
            )
            msg_id = int(cur.lastrowid)
        return msg.model_copy(update={"id": msg_id})

    def list_inbox(self, user_id: str, unread_only: bool = False) -> List[InboxMessage]:
        sql = "SELECT * FROM inbox_messages WHERE user_id = ?"
        if unread_only:
            sql += " AND read_at IS NULL"
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY id DESC", (user_id,)).fetchall()
        return [InboxMessage(**dict(r)) for r in rows]

    def unread_count(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM inbox_messages WHERE user_id = ? AND read_at IS NULL",
                (user_id,),
            ).fetchone()
        return int(row[0])

    def mark_inbox_read(self, message_id: int, user_id: Optional[str] = None) -> bool:
        sql = "UPDATE inbox_messages SET read_at = ? WHERE id = ? AND read_at IS NULL"
        params: List[Any] = [_iso(utc_now()), message_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        with self._connect() as conn:
            cur = conn.execute(sql, params)
            if cur.rowcount:
                return True
            # Already read still counts as success as long as the message exists
            exists = conn.execute(
                "SELECT 1 FROM inbox_messages WHERE id = ?"
                + (" AND user_id = ?" if user_id is not None else ""),
                params[1:],
            ).fetchone()
        return exists is not None

"""Database schema DDL definitions and initialization utilities.

Tables:
  - rate_alerts: standing threshold alerts per user and pair
  - alert_triggers: one audit row per successful claim (append-only)
  - notification_preferences: per-user channel switches
  - notification_records: every delivery attempt, per channel (append-only)
  - inbox_messages: in-app notification inbox
  - metadata: key/value store (schema version)
"""

from __future__ import annotations
import sqlite3
from typing import Sequence
from pathlib import Path

BASIC_UTC_NOW = "strftime('%Y-%m-%dT%H:%M:%fZ','now')"

RATE_ALERTS_DDL = f"""
CREATE TABLE IF NOT EXISTS rate_alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    pair TEXT NOT NULL, -- 'USD_EUR'
    target_rate REAL NOT NULL CHECK (target_rate > 0),
    direction TEXT NOT NULL, -- 'gte' | 'lte' | 'strict_above' | 'strict_below'
    active INTEGER NOT NULL DEFAULT 1,
    notified INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW}),
    updated_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW}),
    triggered_at TEXT,
    CHECK (notified = 0 OR triggered_at IS NOT NULL)
);
"""

ALERT_TRIGGERS_DDL = """
CREATE TABLE IF NOT EXISTS alert_triggers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    alert_id INTEGER NOT NULL,
    rate REAL NOT NULL,
    provider_name TEXT NOT NULL,
    triggered_at TEXT NOT NULL,
    FOREIGN KEY (alert_id) REFERENCES rate_alerts(id) ON DELETE CASCADE
);
"""

NOTIFICATION_PREFERENCES_DDL = f"""
CREATE TABLE IF NOT EXISTS notification_preferences (
    user_id TEXT PRIMARY KEY,
    in_app_enabled INTEGER NOT NULL DEFAULT 1,
    email_enabled INTEGER NOT NULL DEFAULT 0,
    push_enabled INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW})
);
"""

# No FK on alert_id: delivery history outlives deleted alerts.
NOTIFICATION_RECORDS_DDL = """
CREATE TABLE IF NOT EXISTS notification_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    alert_id INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    channel TEXT NOT NULL CHECK (channel IN ('in_app','email','push')),
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    sent_at TEXT NOT NULL,
    delivered INTEGER NOT NULL DEFAULT 1,
    error TEXT
);
"""

INBOX_MESSAGES_DDL = """
CREATE TABLE IF NOT EXISTS inbox_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    alert_id INTEGER,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    created_at TEXT NOT NULL,
    read_at TEXT
);
"""

METADATA_DDL = f"""
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW})
);
"""

ALERTS_ELIGIBLE_INDEX_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_rate_alerts_eligible ON rate_alerts(active, notified);"
)
ALERTS_USER_INDEX_DDL = "CREATE INDEX IF NOT EXISTS idx_rate_alerts_user ON rate_alerts(user_id);"
TRIGGERS_ALERT_INDEX_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_alert_triggers_alert ON alert_triggers(alert_id);"
)
RECORDS_ALERT_INDEX_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_notification_records_alert ON notification_records(alert_id);"
)
INBOX_USER_INDEX_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_inbox_user_unread ON inbox_messages(user_id, read_at);"
)

DDL_ORDER: Sequence[str] = (
    RATE_ALERTS_DDL,
    ALERT_TRIGGERS_DDL,
    NOTIFICATION_PREFERENCES_DDL,
    NOTIFICATION_RECORDS_DDL,
    INBOX_MESSAGES_DDL,
    METADATA_DDL,
)

INDEX_ORDER: Sequence[str] = (
    ALERTS_ELIGIBLE_INDEX_DDL,
    ALERTS_USER_INDEX_DDL,
    TRIGGERS_ALERT_INDEX_DDL,
    RECORDS_ALERT_INDEX_DDL,
    INBOX_USER_INDEX_DDL,
)


def init_db(path: Path) -> None:
    """Create all tables and indexes idempotently.

    Parameters
    ----------
    path: Path to SQLite database file.
    """
    conn = sqlite3.connect(path)
    try:
        cur = conn.cursor()
        for ddl in DDL_ORDER:
            cur.execute(ddl)
        for ddl in INDEX_ORDER:
            cur.execute(ddl)
        conn.commit()
    finally:
        conn.close()

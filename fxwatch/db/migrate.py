"""Database migration utilities.

Applies idempotent migrations keyed by an integer `schema_version` stored in
the metadata table.

v2: rewrite legacy direction spellings ('>=', 'above', 'strictAbove', ...) in
    rate_alerts to the canonical names understood by AlertDirection.
"""

from __future__ import annotations
from pathlib import Path
import logging
import sqlite3
from typing import Optional

from . import schema as schema_def
from .schema import init_db

CURRENT_SCHEMA_VERSION = 2
SCHEMA_VERSION_KEY = "schema_version"

LEGACY_DIRECTIONS = {
    ">=": "gte",
    "above": "strict_above",
    "<=": "lte",
    "below": "strict_below",
    ">": "strict_above",
    "strictAbove": "strict_above",
    "<": "strict_below",
    "strictBelow": "strict_below",
}

logger = logging.getLogger(__name__)


def _get_schema_version(conn: sqlite3.Connection) -> Optional[int]:
    try:
        cur = conn.cursor()
        cur.execute("SELECT value FROM metadata WHERE key=?", (SCHEMA_VERSION_KEY,))
        row = cur.fetchone()
        if row:
            return int(row[0])
    except sqlite3.OperationalError:
        # metadata table may not exist yet (first run before init_db)
        return None
    return None


def apply_migrations(db_path: Path) -> int:
    """Apply required migrations and return resulting schema version."""
    init_db(db_path)
    conn = sqlite3.connect(db_path)
    try:
        version = _get_schema_version(conn) or 1
        if version < 2:
            _migrate_to_v2(conn)
            version = 2
        _set_schema_version(conn, version)
        conn.commit()
        return version
    finally:
        conn.close()


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    cur = conn.cursor()
    cur.execute(
        "INSERT INTO metadata (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value, "
        f"updated_at=({schema_def.BASIC_UTC_NOW})",
        (SCHEMA_VERSION_KEY, str(version)),
    )


def _migrate_to_v2(conn: sqlite3.Connection) -> None:
    """Upgrade schema to version 2 (canonical alert directions)."""
    cur = conn.cursor()
    try:
        changed = 0
        for legacy, canonical in LEGACY_DIRECTIONS.items():
            cur.execute(
                "UPDATE rate_alerts SET direction = ? WHERE direction = ?",
                (canonical, legacy),
            )
            changed += cur.rowcount
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    if changed:
        logger.info("normalized %d legacy alert direction(s)", changed)

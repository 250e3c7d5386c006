"""Tests for the data access layer and migrations."""

import sqlite3
from datetime import datetime, timezone

import pytest

from fxwatch.core.errors import AlertNotFoundError
from fxwatch.db.dal import Database
from fxwatch.db.migrate import CURRENT_SCHEMA_VERSION, apply_migrations
from fxwatch.models import AlertDirection, NotificationPreference

T0 = datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)


def new_alert(db: Database, **overrides):
    fields = dict(user_id="u1", pair="USD_EUR", target_rate=0.80, direction=AlertDirection.GTE)
    fields.update(overrides)
    return db.create_alert(**fields)


# =============================================================
# TEST: Alert CRUD
# =============================================================

class TestAlerts:

    def test_create_and_get(self, db: Database):
        alert = new_alert(db)

        loaded = db.get_alert(alert.id)

        assert loaded == alert
        assert loaded.active and not loaded.notified

    def test_require_unknown(self, db: Database):
        with pytest.raises(AlertNotFoundError):
            db.require_alert(404)

    def test_list_filters(self, db: Database):
        new_alert(db, user_id="u1")
        new_alert(db, user_id="u2")
        new_alert(db, user_id="u1", active=False)

        assert len(db.list_alerts()) == 3
        assert len(db.list_alerts(user_id="u1")) == 2
        assert len(db.list_alerts(user_id="u1", active_only=True)) == 1
        assert len(db.list_eligible_alerts()) == 2

    def test_delete_cascades_triggers(self, db: Database):
        alert = new_alert(db)
        db.claim_alert(alert.id, 0.85, "internal", T0)

        assert db.delete_alert(alert.id)
        assert not db.delete_alert(alert.id)
        assert db.list_triggers(alert.id) == []

    def test_summary(self, db: Database):
        a = new_alert(db)
        new_alert(db)
        new_alert(db, active=False)
        db.claim_alert(a.id, 0.85, "internal", T0)

        assert db.alert_summary() == {"total": 3, "pending": 1, "triggered": 1, "inactive": 1}
        assert db.alert_summary(user_id="nobody")["total"] == 0


# =============================================================
# TEST: Atomic claim
# =============================================================

class TestClaim:

    def test_claim_once(self, db: Database):
        alert = new_alert(db)

        assert db.claim_alert(alert.id, 0.85, "internal", T0) is True
        assert db.claim_alert(alert.id, 0.86, "internal", T0) is False

        stored = db.get_alert(alert.id)
        assert stored.notified
        assert stored.triggered_at == T0
        triggers = db.list_triggers(alert.id)
        assert len(triggers) == 1
        assert triggers[0].rate == 0.85

    def test_inactive_alert_cannot_be_claimed(self, db: Database):
        alert = new_alert(db, active=False)

        assert db.claim_alert(alert.id, 0.85, "internal", T0) is False
        assert db.list_triggers(alert.id) == []

    def test_notified_without_timestamp_rejected_by_schema(self, db: Database):
        alert = new_alert(db)
        with pytest.raises(sqlite3.IntegrityError):
            with db._connect() as conn:
                conn.execute("UPDATE rate_alerts SET notified = 1 WHERE id = ?", (alert.id,))


# =============================================================
# TEST: Re-arming
# =============================================================

class TestRearm:

    def test_edit_target_rearms(self, db: Database):
        alert = new_alert(db)
        db.claim_alert(alert.id, 0.85, "internal", T0)

        updated = db.update_alert(alert.id, target_rate=0.90)

        assert updated.target_rate == 0.90
        assert not updated.notified and updated.triggered_at is None
        assert db.get_alert(alert.id).eligible

    def test_edit_without_rearm_keeps_state(self, db: Database):
        alert = new_alert(db)
        db.claim_alert(alert.id, 0.85, "internal", T0)

        updated = db.update_alert(alert.id, direction="lte", rearm=False)

        assert updated.direction is AlertDirection.LTE
        assert updated.notified

    def test_reactivation_rearms(self, db: Database):
        alert = new_alert(db)
        db.claim_alert(alert.id, 0.85, "internal", T0)

        paused = db.update_alert(alert.id, active=False)
        assert paused.notified

        resumed = db.update_alert(alert.id, active=True)
        assert resumed.active and not resumed.notified

    def test_noop_edit_does_not_rearm(self, db: Database):
        alert = new_alert(db)
        db.claim_alert(alert.id, 0.85, "internal", T0)

        updated = db.update_alert(alert.id, target_rate=0.80, pair="usd_eur")

        assert updated.notified

    def test_invalid_edit_rejected(self, db: Database):
        alert = new_alert(db)
        with pytest.raises(ValueError):
            db.update_alert(alert.id, pair="nope")
        assert db.get_alert(alert.id).pair == "USD_EUR"


# =============================================================
# TEST: Notifications storage
# =============================================================

class TestNotificationStorage:

    def test_preferences_roundtrip(self, db: Database):
        assert db.get_preferences("u1") is None

        db.set_preferences("u1", NotificationPreference(email_enabled=True))
        db.set_preferences("u1", NotificationPreference(email_enabled=True, push_enabled=True))

        pref = db.get_preferences("u1")
        assert pref.in_app_enabled and pref.email_enabled and pref.push_enabled

    def test_inbox_read_flow(self, db: Database):
        msg = db.add_inbox_message("u1", "title", "body", alert_id=1)
        db.add_inbox_message("u2", "other", "body")

        assert db.unread_count("u1") == 1
        assert db.mark_inbox_read(msg.id, user_id="u1")
        assert db.mark_inbox_read(msg.id, user_id="u1")  # already read
        assert not db.mark_inbox_read(msg.id, user_id="u2")
        assert not db.mark_inbox_read(999)
        assert db.unread_count("u1") == 0
        assert db.list_inbox("u1", unread_only=True) == []
        assert db.list_inbox("u1")[0].read_at is not None


# =============================================================
# TEST: Migrations
# =============================================================

class TestMigrations:

    def test_idempotent(self, db_path):
        assert apply_migrations(db_path) == CURRENT_SCHEMA_VERSION
        assert apply_migrations(db_path) == CURRENT_SCHEMA_VERSION

    def test_legacy_directions_normalized(self, db_path):
        conn = sqlite3.connect(db_path)
        try:
            conn.executemany(
                "INSERT INTO rate_alerts (user_id, pair, target_rate, direction) VALUES (?, ?, ?, ?)",
                [("u1", "USD_EUR", 0.8, ">="), ("u1", "USD_EUR", 0.8, "strictBelow"), ("u1", "USD_EUR", 0.8, "lte")],
            )
            conn.execute("UPDATE metadata SET value = '1' WHERE key = 'schema_version'")
            conn.commit()
        finally:
            conn.close()

        assert apply_migrations(db_path) == 2

        directions = [a.direction for a in Database(db_path).list_alerts()]
        assert directions == [AlertDirection.GTE, AlertDirection.STRICT_BELOW, AlertDirection.LTE]

    def test_legacy_above_below_stay_strict(self, db_path):
        conn = sqlite3.connect(db_path)
        try:
            conn.executemany(
                "INSERT INTO rate_alerts (user_id, pair, target_rate, direction) VALUES (?, ?, ?, ?)",
                [("u1", "USD_EUR", 0.85, "above"), ("u1", "USD_EUR", 0.85, "below")],
            )
            conn.execute("UPDATE metadata SET value = '1' WHERE key = 'schema_version'")
            conn.commit()
            apply_migrations(db_path)
            stored = [row[0] for row in conn.execute("SELECT direction FROM rate_alerts ORDER BY id")]
        finally:
            conn.close()

        assert stored == ["strict_above", "strict_below"]
        alerts = Database(db_path).list_alerts()
        assert not any(a.direction.is_met(0.85, a.target_rate) for a in alerts)

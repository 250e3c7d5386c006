"""
Tests for AlertEngine.

Covers:
- Condition evaluation and trigger persistence
- Exactly-once notification across repeated and concurrent passes
- Error collection (missing rates, persistence failures)
- Multi-provider best-quote resolution
"""

import asyncio
import random
import sqlite3
from datetime import timedelta

import pytest

from fxwatch.core.errors import AlertNotFoundError
from fxwatch.db.dal import Database
from fxwatch.models import AlertDirection, NotificationChannel, NotificationPreference
from fxwatch.services.alerts import AlertEngine, evaluate
from fxwatch.services.notifications import NotificationDispatcher
from fxwatch.services.rates.providers import InternalFeedSource
from fxwatch.services.rates.registry import ProviderRegistry
from tests.fakes import FakeClock, ScriptedSource, make_runtime


def make_engine(db: Database, registry: ProviderRegistry, **kwargs) -> AlertEngine:
    clock = kwargs.pop("clock", FakeClock())
    return AlertEngine(db, registry, NotificationDispatcher(db, clock=clock), clock=clock, **kwargs)


def single_provider(source: ScriptedSource, **settings) -> ProviderRegistry:
    registry = ProviderRegistry()
    runtime = make_runtime(source, **settings)
    registry.register(source.name, lambda: runtime)
    return registry


# =============================================================
# TEST: Triggering
# =============================================================

class TestTrigger:

    @pytest.mark.asyncio
    async def test_condition_met_triggers_and_notifies(self, db: Database, registry):
        alert = db.create_alert("u1", "USD_EUR", 0.80, AlertDirection.GTE)
        engine = make_engine(db, registry)

        summary = await engine.check_all()

        assert summary.checked_count == 1
        assert summary.triggered_count == 1
        assert summary.triggered_alert_ids == [alert.id]
        assert summary.errors == []

        stored = db.get_alert(alert.id)
        assert stored.notified and stored.triggered_at is not None
        triggers = db.list_triggers(alert.id)
        assert [(t.rate, t.provider_name) for t in triggers] == [(0.85, "internal")]

        records = db.list_notification_records(alert_id=alert.id)
        assert len(records) == 1
        assert records[0].channel is NotificationChannel.IN_APP
        assert records[0].delivered
        assert "USD/EUR" in records[0].message
        assert "0.8500" in records[0].message
        assert db.unread_count("u1") == 1

    @pytest.mark.asyncio
    async def test_condition_not_met(self, db: Database):
        alert = db.create_alert("u1", "USD_EUR", 0.80, AlertDirection.GTE)
        engine = make_engine(db, single_provider(ScriptedSource([0.75], name="internal")))

        summary = await engine.check_all()

        assert summary.checked_count == 1
        assert summary.triggered_count == 0
        assert db.get_alert(alert.id).eligible
        assert db.list_notification_records() == []

    @pytest.mark.asyncio
    async def test_second_pass_is_silent(self, db: Database, registry):
        db.create_alert("u1", "USD_EUR", 0.80, AlertDirection.GTE)
        engine = make_engine(db, registry)

        await engine.check_all()
        again = await engine.check_all()

        assert again.checked_count == 0
        assert again.triggered_count == 0
        assert len(db.list_notification_records()) == 1

    @pytest.mark.asyncio
    async def test_user_scope(self, db: Database, registry):
        db.create_alert("u1", "USD_EUR", 0.80, AlertDirection.GTE)
        other = db.create_alert("u2", "USD_EUR", 0.80, AlertDirection.GTE)
        engine = make_engine(db, registry)

        summary = await engine.check_all(user_id="u1")

        assert summary.triggered_count == 1
        assert db.get_alert(other.id).eligible

    @pytest.mark.asyncio
    async def test_preferences_fan_out(self, db: Database, registry):
        db.set_preferences("u1", NotificationPreference(email_enabled=True, push_enabled=True))
        alert = db.create_alert("u1", "USD_EUR", 0.90, AlertDirection.LTE)
        engine = make_engine(db, registry)

        await engine.check_all()

        channels = [r.channel for r in db.list_notification_records(alert_id=alert.id)]
        assert channels == [NotificationChannel.IN_APP, NotificationChannel.EMAIL, NotificationChannel.PUSH]

    @pytest.mark.asyncio
    async def test_many_alerts_one_fetch_per_pair(self, db: Database):
        source = ScriptedSource([0.85], name="internal")
        # Cache disabled so deduplication must come from the pass itself
        engine = make_engine(db, single_provider(source, cache_ttl=timedelta(0)), concurrency=8)
        for i in range(100):
            direction = AlertDirection.GTE if i % 2 == 0 else AlertDirection.LTE
            db.create_alert(f"user-{i % 7}", "USD_EUR", 0.80, direction)

        summary = await engine.check_all()

        assert summary.checked_count == 100
        assert summary.triggered_count == 50
        assert len(set(summary.triggered_alert_ids)) == 50
        assert source.calls == 1
        assert len(db.list_notification_records()) == 50

    @pytest.mark.asyncio
    async def test_mixed_alerts_match_independent_evaluation(self, db: Database):
        feed = InternalFeedSource(latency_ms=(0, 0))
        registry = ProviderRegistry()
        runtime = make_runtime(feed)
        registry.register("internal", lambda: runtime)
        rng = random.Random(7)
        pairs = feed.available_pairs()
        directions = list(AlertDirection)
        expected = 0
        for i in range(100):
            pair = rng.choice(pairs)
            buy = (await feed.fetch_rates(pair)).buy_price
            target = round(buy * rng.uniform(0.95, 1.05), 4)
            direction = rng.choice(directions)
            db.create_alert(f"user-{i % 5}", pair, target, direction)
            expected += direction.is_met(buy, target)

        summary = await make_engine(db, registry, concurrency=4).check_all()

        assert summary.checked_count == 100
        assert summary.triggered_count == expected
        assert summary.errors == []

    @pytest.mark.asyncio
    async def test_check_single_alert(self, db: Database, registry):
        alert = db.create_alert("u1", "USD_EUR", 0.80, AlertDirection.GTE)
        engine = make_engine(db, registry)

        summary = await engine.check_alert(alert.id)
        assert summary.triggered_count == 1

        again = await engine.check_alert(alert.id)
        assert again.checked_count == 0

        with pytest.raises(AlertNotFoundError):
            await engine.check_alert(9999)


# =============================================================
# TEST: Concurrency / exactly-once
# =============================================================

class TestExactlyOnce:

    @pytest.mark.asyncio
    async def test_two_workers_race_for_same_alert(self, db: Database):
        alert = db.create_alert("u1", "USD_EUR", 0.80, AlertDirection.GTE)
        worker_a = make_engine(db, single_provider(ScriptedSource([0.85], name="internal", delay=0.01)))
        worker_b = make_engine(db, single_provider(ScriptedSource([0.85], name="internal", delay=0.01)))

        a, b = await asyncio.gather(worker_a.check_all(), worker_b.check_all())

        assert a.checked_count == b.checked_count == 1
        assert a.triggered_count + b.triggered_count == 1
        assert len(db.list_triggers(alert.id)) == 1
        assert len(db.list_notification_records(alert_id=alert.id)) == 1

    @pytest.mark.asyncio
    async def test_lost_claim_sends_nothing(self, db: Database, registry, monkeypatch):
        db.create_alert("u1", "USD_EUR", 0.80, AlertDirection.GTE)
        monkeypatch.setattr(db, "claim_alert", lambda *args, **kwargs: False)
        engine = make_engine(db, registry)

        summary = await engine.check_all()

        assert summary.triggered_count == 0
        assert summary.errors == []
        assert db.list_notification_records() == []


# =============================================================
# TEST: Error collection
# =============================================================

class TestErrors:

    @pytest.mark.asyncio
    async def test_persistence_failure_blocks_notification(self, db: Database, registry, monkeypatch):
        alert = db.create_alert("u1", "USD_EUR", 0.80, AlertDirection.GTE)

        def locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(db, "claim_alert", locked)
        engine = make_engine(db, registry)

        summary = await engine.check_all()

        assert summary.triggered_count == 0
        assert len(summary.errors) == 1
        assert "database is locked" in summary.errors[0]
        assert db.list_notification_records() == []
        assert db.get_alert(alert.id).eligible

    @pytest.mark.asyncio
    async def test_missing_rate_is_collected_not_raised(self, db: Database):
        db.create_alert("u1", "USD_EUR", 0.80, AlertDirection.GTE)
        db.create_alert("u1", "USD_GBP", 0.70, AlertDirection.GTE)
        source = ScriptedSource([0.85], name="internal", pairs=["USD_EUR"])
        engine = make_engine(db, single_provider(source))

        summary = await engine.check_all()

        assert summary.checked_count == 2
        assert summary.triggered_count == 1
        assert len(summary.errors) == 1
        assert "USD_GBP" in summary.errors[0]

    @pytest.mark.asyncio
    async def test_unregistered_provider(self, db: Database):
        db.create_alert("u1", "USD_EUR", 0.80, AlertDirection.GTE)
        engine = make_engine(db, ProviderRegistry(), provider_names=["ghost"])

        summary = await engine.check_all()

        assert summary.triggered_count == 0
        assert "not registered" in summary.errors[0]

    @pytest.mark.asyncio
    async def test_failed_load_reported(self, db: Database, registry, monkeypatch):
        def broken(*args, **kwargs):
            raise sqlite3.OperationalError("no such table: rate_alerts")

        monkeypatch.setattr(db, "list_eligible_alerts", broken)
        engine = make_engine(db, registry)

        summary = await engine.check_all()

        assert summary.checked_count == 0
        assert "failed to load alerts" in summary.errors[0]


# =============================================================
# TEST: Multi-provider resolution
# =============================================================

class TestMultiProvider:

    @pytest.mark.asyncio
    async def test_best_quote_wins(self, db: Database):
        registry = ProviderRegistry()
        for name, rate in (("a", 0.79), ("b", 0.86)):
            runtime = make_runtime(ScriptedSource([rate], name=name))
            registry.register(name, lambda rt=runtime: rt)
        alert = db.create_alert("u1", "USD_EUR", 0.85, AlertDirection.GTE)
        engine = make_engine(db, registry, provider_names=["a", "b"])

        summary = await engine.check_all()

        assert summary.triggered_count == 1
        assert db.list_triggers(alert.id)[0].provider_name == "b"

    @pytest.mark.asyncio
    async def test_all_providers_failing(self, db: Database):
        registry = ProviderRegistry()
        for name in ("a", "b"):
            runtime = make_runtime(ScriptedSource([None], name=name), max_retries=1)
            registry.register(name, lambda rt=runtime: rt)
        db.create_alert("u1", "USD_EUR", 0.85, AlertDirection.GTE)
        engine = make_engine(db, registry, provider_names=["a", "b"])

        summary = await engine.check_all()

        assert summary.triggered_count == 0
        assert "no provider returned a rate" in summary.errors[0]


def test_evaluate_is_pure(db: Database):
    alert = db.create_alert("u1", "USD_EUR", 0.80, AlertDirection.STRICT_ABOVE)

    assert not evaluate(alert, 0.80)
    assert evaluate(alert, 0.81)
    assert db.get_alert(alert.id).eligible


def test_engine_rejects_bad_configuration(db: Database):
    with pytest.raises(ValueError):
        AlertEngine(db, ProviderRegistry(), NotificationDispatcher(db), provider_names=[])
    with pytest.raises(ValueError):
        AlertEngine(db, ProviderRegistry(), NotificationDispatcher(db), concurrency=0)

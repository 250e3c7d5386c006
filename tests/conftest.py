from pathlib import Path

import pytest

from fxwatch.core.config import Settings
from fxwatch.db.dal import Database
from fxwatch.db.migrate import apply_migrations
from fxwatch.services.rates.registry import ProviderRegistry
from tests.fakes import ScriptedSource, make_runtime


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "fxwatch-test.sqlite3"
    apply_migrations(path)
    return path


@pytest.fixture
def db(db_path: Path) -> Database:
    return Database(db_path)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Isolated settings: temp data dir, no background scheduler, no feed latency."""
    return Settings(
        data_dir=tmp_path,
        alert_check_interval_seconds=0,
        internal_feed_latency_ms=(0, 0),
        provider_backoff_base_seconds=0,
        provider_request_timeout_seconds=2,
    )


@pytest.fixture
def internal_source() -> ScriptedSource:
    return ScriptedSource([0.85], name="internal")


@pytest.fixture
def registry(internal_source: ScriptedSource) -> ProviderRegistry:
    reg = ProviderRegistry()
    runtime = make_runtime(internal_source)
    reg.register("internal", lambda: runtime)
    return reg

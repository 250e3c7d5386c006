import pytest

from fxwatch.core.config import Settings


def test_post_load_derives_db_path(tmp_path):
    settings = Settings(data_dir=tmp_path / "nested", health_check_pair="usd_gbp")

    settings.init_post_load()

    assert settings.db_path == tmp_path / "nested" / "fxwatch.sqlite3"
    assert settings.db_path.parent.is_dir()
    assert settings.health_check_pair == "USD_GBP"


@pytest.mark.parametrize(
    "overrides",
    [
        {"alert_providers": ["nope"]},
        {"comparison_providers": ["internal", "nope"]},
        {"alert_providers": []},
        {"provider_max_retries": 0},
        {"alert_check_concurrency": 0},
    ],
)
def test_post_load_rejects_bad_values(tmp_path, overrides):
    settings = Settings(data_dir=tmp_path, **overrides)

    with pytest.raises(ValueError):
        settings.init_post_load()


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("ALERT_CHECK_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("ALERT_PROVIDERS", '["internal", "exchangerate_api"]')

    settings = Settings(data_dir=tmp_path)

    assert settings.alert_check_interval_seconds == 0
    assert settings.alert_providers == ["internal", "exchangerate_api"]

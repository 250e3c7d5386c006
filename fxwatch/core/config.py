from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Tuple
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment with defaults.

    Environment variable mapping follows pydantic's rules (e.g., APP_NAME, DEBUG, DATA_DIR,
    ALERT_PROVIDERS, PROVIDER_CACHE_TTL_SECONDS, ALERT_CHECK_INTERVAL_SECONDS).
    """

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Basic app metadata
    app_name: str = "fxwatch"
    debug: bool = False
    version: str = "0.1.0"

    # Data & persistence
    data_dir: Path = Path("data")
    db_filename: str = "fxwatch.sqlite3"
    db_path: Optional[Path] = None  # derived if not provided

    # Rate providers
    # Providers consulted by the alert engine: a single name is queried directly,
    # several names are resolved through the aggregator and the best quote wins.
    alert_providers: List[str] = ["internal"]
    comparison_providers: List[str] = ["internal", "exchangerate_api"]
    provider_cache_ttl_seconds: float = 300.0
    provider_max_retries: int = 3
    provider_request_timeout_seconds: float = 10.0
    provider_backoff_base_seconds: float = 1.0
    internal_feed_latency_ms: Tuple[int, int] = (100, 300)
    health_check_pair: str = "USD_EUR"

    # Public REST adapter (exchangerate-api.com)
    exchange_api_key: Optional[str] = None
    exchange_api_free_base_url: AnyHttpUrl = "https://api.exchangerate-api.com/v4/latest"
    exchange_api_paid_base_url: AnyHttpUrl = "https://v6.exchangerate-api.com/v6"

    # Alert evaluation
    alert_check_interval_seconds: float = 3600.0  # 0 disables the in-process scheduler
    alert_check_concurrency: int = 1
    rearm_on_edit: bool = True

    # Feature toggles
    enable_rate_override: bool = True

    def init_post_load(self) -> None:
        """Finalize derived fields and ensure directories exist."""
        if self.db_path is None:
            self.db_path = self.data_dir / self.db_filename
        # Ensure persistence directory exists
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        # Normalize / validate providers
        from fxwatch.services.rates.providers import BUILTIN_PROVIDERS

        unknown = {*self.alert_providers, *self.comparison_providers} - set(BUILTIN_PROVIDERS)
        if unknown:
            raise ValueError(
                f"Unsupported rate provider(s) {sorted(unknown)}. Allowed: {sorted(BUILTIN_PROVIDERS)}"
            )
        if not self.alert_providers:
            raise ValueError("alert_providers must name at least one provider")
        if self.provider_max_retries < 1:
            raise ValueError("provider_max_retries must be >= 1")
        if self.alert_check_concurrency < 1:
            raise ValueError("alert_check_concurrency must be >= 1")
        self.health_check_pair = self.health_check_pair.upper()


@lru_cache
def get_settings() -> Settings:
    settings = Settings()
    settings.init_post_load()
    return settings

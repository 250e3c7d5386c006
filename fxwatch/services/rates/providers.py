from __future__ import annotations

"""Concrete rate sources and the default registry.

'internal' simulates an authoritative in-house aggregated feed backed by a
static in-memory table; 'exchangerate_api' calls the public
exchangerate-api.com service (keyless free tier or keyed paid tier).
"""
import asyncio
import logging
import math
import random
from datetime import datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import httpx

from fxwatch.services.http_client import HttpError, get_json
from .base import (
    ConfigField,
    ProviderInfo,
    RateQuote,
    RateSource,
    is_valid_pair,
    split_pair,
    utc_now,
)
from .registry import ProviderRegistry
from .runtime import ProviderRuntime, ProviderSettings

if TYPE_CHECKING:  # pragma: no cover
    from fxwatch.core.config import Settings

logger = logging.getLogger(__name__)

INTERNAL = "internal"
EXCHANGERATE_API = "exchangerate_api"
BUILTIN_PROVIDERS = (INTERNAL, EXCHANGERATE_API)

# The internal feed refreshes faster than public APIs
INTERNAL_FEED_CACHE_TTL = timedelta(minutes=1)

# pair -> (buy, sell)
_INTERNAL_RATES: Dict[str, Tuple[float, float]] = {
    "USD_EUR": (0.8523, 0.8547),
    "USD_GBP": (0.7289, 0.7315),
    "USD_JPY": (149.25, 149.95),
    "USD_CAD": (1.3245, 1.3278),
    "USD_AUD": (1.4876, 1.4912),
    "USD_CHF": (0.8698, 0.8725),
    "USD_CNY": (7.2345, 7.2578),
    "USD_INR": (83.124, 83.456),
    "EUR_GBP": (0.8542, 0.8568),
    "EUR_JPY": (175.23, 175.87),
    "GBP_JPY": (204.78, 205.42),
}

FALLBACK_CURRENCIES: Tuple[str, ...] = (
    "USD", "EUR", "GBP", "JPY", "CAD", "AUD", "CHF", "CNY", "INR",
    "BRL", "MXN", "KRW", "ZAR", "SEK", "NOK", "DKK", "PLN", "CZK",
)


class InternalFeedSource(RateSource):
    """In-memory quote table with artificial latency to exercise timeout paths."""

    info = ProviderInfo(
        name=INTERNAL,
        display_name="Internal Aggregated Feed",
        description="In-house aggregated rates from multiple data sources",
        supports_custom_pair=True,
        rate_types=("buy", "sell", "mid"),
    )

    def __init__(
        self,
        rates: Optional[Dict[str, Tuple[float, float]]] = None,
        latency_ms: Tuple[int, int] = (100, 300),
    ):
        super().__init__()
        self._rates: Dict[str, Tuple[float, float]] = dict(
            _INTERNAL_RATES if rates is None else rates
        )
        self.latency_ms = latency_ms

    async def fetch_rates(self, pair: str) -> RateQuote:
        rejected = self._precheck(pair)
        if rejected is not None:
            return rejected
        await self._simulate_latency()
        buy, sell = self._rates[pair]
        return RateQuote.success(self.name, buy, sell)

    def supports_pair(self, pair: str) -> bool:
        return is_valid_pair(pair) and pair in self._rates

    def config_schema(self) -> Dict[str, ConfigField]:
        return {
            "mock_data": ConfigField(
                description="Static rate table",
                type="readonly",
                value=f"{len(self._rates)} pairs available",
                readonly=True,
            ),
            "api_endpoint": ConfigField(
                description="Internal rates API endpoint",
                type="text",
                value="internal://rates/v1",
                placeholder="internal://rates/v1",
            ),
            "update_frequency": ConfigField(
                description="How often rates are updated (seconds)",
                type="number",
                value=60,
                min=30,
                max=3600,
            ),
        }

    # Table maintenance ----------------------------------------
    def set_rate(self, pair: str, buy: float, sell: Optional[float] = None) -> None:
        """Insert or replace a quote. Callers owning a runtime must invalidate its cache."""
        if not is_valid_pair(pair):
            raise ValueError(f"Invalid pair format: {pair!r}")
        sell = buy if sell is None else sell
        if buy <= 0 or sell <= 0:
            raise ValueError("rates must be positive")
        self._rates[pair] = (float(buy), float(sell))

    def available_pairs(self) -> List[str]:
        return sorted(self._rates)

    async def _simulate_latency(self) -> None:
        low, high = self.latency_ms
        if high <= 0:
            return
        await asyncio.sleep(random.uniform(low, high) / 1000.0)


class ExchangeRateApiSource(RateSource):
    """exchangerate-api.com adapter.

    Free tier (no key): ``GET {free_base}/{BASE}`` returns every rate for BASE
    under ``rates``; we index into it. Paid tier (key): ``GET
    {paid_base}/{key}/pair/{BASE}/{QUOTE}`` returns ``conversion_rate``
    directly. The API publishes mid-market rates only, so buy == sell.
    """

    info = ProviderInfo(
        name=EXCHANGERATE_API,
        display_name="ExchangeRate-API",
        description="Public currency conversion API with live mid-market rates",
        website="https://www.exchangerate-api.com",
        supports_custom_pair=True,
        rate_types=("mid",),
    )

    def __init__(
        self,
        api_key: Optional[str] = None,
        free_base_url: str = "https://api.exchangerate-api.com/v4/latest",
        paid_base_url: str = "https://v6.exchangerate-api.com/v6",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__()
        self._api_key = api_key or None
        self.free_base_url = str(free_base_url).rstrip("/")
        self.paid_base_url = str(paid_base_url).rstrip("/")
        self.timeout = timeout
        self._client = client
        self._supported_currencies: List[str] = []

    async def fetch_rates(self, pair: str) -> RateQuote:
        rejected = self._precheck(pair)
        if rejected is not None:
            return rejected
        base, quote = split_pair(pair)
        try:
            data = await get_json(self._pair_url(base, quote), timeout=self.timeout, client=self._client)
        except HttpError as e:
            return self.fail(f"Failed to fetch rates: {e}", retryable=True)
        return self._parse(quote, data)

    def supports_pair(self, pair: str) -> bool:
        if not is_valid_pair(pair):
            return False
        base, quote = split_pair(pair)
        if base == quote:
            return False
        if self._supported_currencies:
            return base in self._supported_currencies and quote in self._supported_currencies
        return True

    def config_schema(self) -> Dict[str, ConfigField]:
        return {
            "api_key": ConfigField(
                description="ExchangeRate-API key (optional, enables the paid tier)",
                type="text",
                value=self._api_key or "",
                placeholder="your-api-key-here",
                sensitive=True,
            ),
            "use_free_tier": ConfigField(
                description="Use free tier (bulk latest rates, limited quota)",
                type="boolean",
                value=self.is_using_free_tier(),
            ),
            "max_requests_per_month": ConfigField(
                description="Maximum requests per month",
                type="number",
                value=1500 if self.is_using_free_tier() else 100000,
                readonly=True,
            ),
        }

    # Tier management ------------------------------------------
    def set_api_key(self, api_key: Optional[str]) -> None:
        self._api_key = api_key or None
        # Supported codes differ per tier
        self._supported_currencies = []

    def is_using_free_tier(self) -> bool:
        return self._api_key is None

    def rate_limit_info(self) -> Dict[str, Any]:
        if not self.is_using_free_tier():
            return {"remaining": None, "reset_time": None}
        now = utc_now()
        if now.month == 12:
            reset = now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
        else:
            reset = now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)
        return {"remaining": 1500, "reset_time": reset.isoformat()}

    async def supported_currencies(self) -> List[str]:
        """ISO codes the API can quote; falls back to common codes when unreachable."""
        if self._supported_currencies:
            return list(self._supported_currencies)
        url = (
            f"{self.paid_base_url}/{self._api_key}/codes"
            if self._api_key
            else f"{self.free_base_url}/USD"
        )
        try:
            data = await get_json(url, timeout=self.timeout, client=self._client)
        except HttpError as e:
            logger.warning("failed to fetch supported currencies: %s", e)
            return list(FALLBACK_CURRENCIES)
        if data.get("result") == "success" and data.get("supported_codes"):
            codes = [row[0] for row in data["supported_codes"] if row]
        elif isinstance(data.get("rates"), dict):
            codes = list(data["rates"])
        else:
            return list(FALLBACK_CURRENCIES)
        self._supported_currencies = sorted(c.upper() for c in codes)
        return list(self._supported_currencies)

    # Internal --------------------------------------------------
    def _pair_url(self, base: str, quote: str) -> str:
        if self._api_key:
            return f"{self.paid_base_url}/{self._api_key}/pair/{base}/{quote}"
        return f"{self.free_base_url}/{base}"

    def _parse(self, quote_ccy: str, data: Dict[str, Any]) -> RateQuote:
        if data.get("result") == "error":
            detail = data.get("error_message") or data.get("error-type") or "Unknown error"
            return self.fail(f"API Error: {detail}")

        if "conversion_rate" in data:
            raw = data["conversion_rate"]
        else:
            rates = data.get("rates")
            if not isinstance(rates, dict) or quote_ccy not in rates:
                return self.fail(f"Currency {quote_ccy} not available in API response")
            raw = rates[quote_ccy]

        try:
            rate = float(raw)
        except (TypeError, ValueError):
            return self.fail(f"Malformed rate {raw!r} in API response")
        if not math.isfinite(rate) or rate <= 0:
            return self.fail(f"Invalid rate {raw!r} in API response")
        return RateQuote.success(self.name, rate, rate, as_of=_parse_update_time(data))


def _parse_update_time(data: Dict[str, Any]) -> datetime:
    # v6 responses carry an RFC 2822 string, the v4 free endpoint a unix timestamp.
    text = data.get("time_last_update_utc")
    if isinstance(text, str):
        try:
            return parsedate_to_datetime(text)
        except (TypeError, ValueError):
            pass
    stamp = data.get("time_last_updated") or data.get("time_last_update_unix")
    if isinstance(stamp, (int, float)):
        return datetime.fromtimestamp(stamp, tz=utc_now().tzinfo)
    return utc_now()


def _runtime_settings(settings: "Settings", **overrides: Any) -> ProviderSettings:
    base = ProviderSettings(
        cache_ttl=timedelta(seconds=settings.provider_cache_ttl_seconds),
        max_retries=settings.provider_max_retries,
        request_timeout=timedelta(seconds=settings.provider_request_timeout_seconds),
        backoff_base=settings.provider_backoff_base_seconds,
    )
    for key, value in overrides.items():
        setattr(base, key, value)
    base.validate()
    return base


def create_default_registry(settings: "Settings") -> ProviderRegistry:
    """Registry with the built-in sources wired to the configured runtime settings."""
    registry = ProviderRegistry()
    registry.register(
        INTERNAL,
        lambda: ProviderRuntime(
            InternalFeedSource(latency_ms=tuple(settings.internal_feed_latency_ms)),
            _runtime_settings(settings, cache_ttl=INTERNAL_FEED_CACHE_TTL),
            health_check_pair=settings.health_check_pair,
        ),
    )
    registry.register(
        EXCHANGERATE_API,
        lambda: ProviderRuntime(
            ExchangeRateApiSource(
                api_key=settings.exchange_api_key,
                free_base_url=str(settings.exchange_api_free_base_url),
                paid_base_url=str(settings.exchange_api_paid_base_url),
                timeout=settings.provider_request_timeout_seconds,
            ),
            _runtime_settings(settings),
            health_check_pair=settings.health_check_pair,
        ),
    )
    return registry

from __future__ import annotations

"""Per-provider runtime: enable switch, TTL cache, timeout and retry.

A ProviderRuntime wraps exactly one RateSource and owns its cache. Only
successful quotes are cached; a cache hit returns the very same RateQuote
object until the TTL elapses.
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from .base import RateQuote, RateSource, is_valid_pair, utc_now

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = timedelta(minutes=5)
DEFAULT_REQUEST_TIMEOUT = timedelta(seconds=10)


@dataclass
class ProviderSettings:
    enabled: bool = True
    cache_ttl: timedelta = field(default=DEFAULT_CACHE_TTL)
    max_retries: int = 3
    request_timeout: timedelta = field(default=DEFAULT_REQUEST_TIMEOUT)
    backoff_base: float = 1.0  # seconds; sleep before attempt n+1 is base * 2**n

    def validate(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.cache_ttl < timedelta(0):
            raise ValueError("cache_ttl must not be negative")
        if self.request_timeout <= timedelta(0):
            raise ValueError("request_timeout must be positive")
        if self.backoff_base < 0:
            raise ValueError("backoff_base must not be negative")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "cache_ttl_seconds": self.cache_ttl.total_seconds(),
            "max_retries": self.max_retries,
            "request_timeout_seconds": self.request_timeout.total_seconds(),
            "backoff_base_seconds": self.backoff_base,
        }


@dataclass
class PairCacheEntry:
    quote: RateQuote
    stored_at: datetime

    def is_fresh(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.stored_at < ttl


class ProviderRuntime:
    def __init__(
        self,
        source: RateSource,
        settings: Optional[ProviderSettings] = None,
        *,
        health_check_pair: str = "USD_EUR",
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.source = source
        self.settings = settings or ProviderSettings()
        self.settings.validate()
        self.source.enabled = self.settings.enabled
        self.health_check_pair = health_check_pair
        self._clock = clock
        self._sleep = sleep
        self._cache: Dict[str, PairCacheEntry] = {}

    @property
    def name(self) -> str:
        return self.source.name

    def supports_pair(self, pair: str) -> bool:
        return self.source.supports_pair(pair)

    async def fetch_rate(self, pair: str) -> RateQuote:
        """Cached, retried quote for ``pair``. Never raises."""
        if not self.settings.enabled:
            return RateQuote.failure(self.name, "Provider is disabled")
        if not is_valid_pair(pair):
            return RateQuote.failure(self.name, f"Invalid pair format: {pair!r}")
        if not self.source.supports_pair(pair):
            return RateQuote.failure(self.name, f"Pair {pair} not supported by {self.name} provider")

        cached = self._cached(pair)
        if cached is not None:
            return cached

        quote = await self._fetch_with_retry(pair)
        if quote.ok:
            self._cache[pair] = PairCacheEntry(quote=quote, stored_at=self._clock())
        return quote

    async def health_check(self, pair: Optional[str] = None) -> bool:
        quote = await self.fetch_rate(pair or self.health_check_pair)
        return quote.ok

    def invalidate(self, pair: Optional[str] = None) -> int:
        """Drop one pair (or every pair) from the cache; returns entries removed."""
        if pair is None:
            removed = len(self._cache)
            self._cache.clear()
            return removed
        return 1 if self._cache.pop(pair, None) is not None else 0

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def update_settings(self, **changes: Any) -> ProviderSettings:
        updated = replace(self.settings, **changes)
        updated.validate()
        self.settings = updated
        self.source.enabled = updated.enabled
        logger.info("provider settings updated", extra={"provider": self.name})
        return updated

    def describe(self) -> Dict[str, Any]:
        info = self.source.info
        return {
            "name": info.name,
            "display_name": info.display_name,
            "description": info.description,
            "website": info.website,
            "supports_custom_pair": info.supports_custom_pair,
            "rate_types": list(info.rate_types),
            "settings": self.settings.as_dict(),
            "config": {k: v.as_dict() for k, v in self.source.config_schema().items()},
            "available_pairs": self.source.available_pairs(),
            "cached_pairs": sorted(self._cache),
        }

    # Internal --------------------------------------------------
    def _cached(self, pair: str) -> Optional[RateQuote]:
        entry = self._cache.get(pair)
        if entry is None:
            return None
        if entry.is_fresh(self._clock(), self.settings.cache_ttl):
            return entry.quote
        del self._cache[pair]
        return None

    async def _fetch_with_retry(self, pair: str) -> RateQuote:
        attempts = self.settings.max_retries
        timeout = self.settings.request_timeout.total_seconds()
        last_error = "no attempt made"
        for attempt in range(1, attempts + 1):
            try:
                quote = await asyncio.wait_for(self.source.fetch_rates(pair), timeout=timeout)
            except asyncio.TimeoutError:
                last_error = f"timed out after {timeout:g}s"
            except Exception as e:  # a raising source counts as a failed attempt
                last_error = f"{type(e).__name__}: {e}"
            else:
                if quote.ok:
                    return quote
                if not quote.retryable:
                    logger.info(
                        "%s rejected by source: %s",
                        pair,
                        quote.error_detail,
                        extra={"provider": self.name, "pair": pair},
                    )
                    return quote
                last_error = quote.error_detail or "unknown error"

            logger.debug(
                "attempt %d/%d for %s failed: %s",
                attempt,
                attempts,
                pair,
                last_error,
                extra={"provider": self.name, "pair": pair},
            )
            if attempt < attempts:
                await self._sleep(self.settings.backoff_base * (2 ** attempt))

        logger.warning(
            "all %d attempts failed for %s: %s",
            attempts,
            pair,
            last_error,
            extra={"provider": self.name, "pair": pair},
        )
        return RateQuote.failure(
            self.name, f"Failed after {attempts} attempt(s): {last_error}", retryable=True
        )

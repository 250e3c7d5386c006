from __future__ import annotations

"""Fan one pair out to several providers and summarize the quotes.

Higher buy price is "best" (the most target currency per unit of base). The
spread is measured on successful quotes only and is zero when fewer than two
providers answered.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .base import RateQuote
from .registry import ProviderRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ComparisonResult:
    pair: str
    quotes: Dict[str, RateQuote]
    best: Optional[float]
    worst: Optional[float]
    spread_percent: float
    best_provider: Optional[str]
    worst_provider: Optional[str]

    @property
    def successful(self) -> Dict[str, RateQuote]:
        return {name: q for name, q in self.quotes.items() if q.ok}

    @property
    def successful_count(self) -> int:
        return len(self.successful)

    def best_quote(self) -> Optional[RateQuote]:
        if self.best_provider is None:
            return None
        return self.quotes[self.best_provider]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "pair": self.pair,
            "quotes": {name: q.as_dict() for name, q in self.quotes.items()},
            "best": self.best,
            "worst": self.worst,
            "spread_percent": self.spread_percent,
            "best_provider": self.best_provider,
            "worst_provider": self.worst_provider,
            "successful_count": self.successful_count,
        }


def summarize_quotes(pair: str, quotes: Dict[str, RateQuote]) -> ComparisonResult:
    ok = [(name, q) for name, q in quotes.items() if q.ok]
    if not ok:
        return ComparisonResult(pair, quotes, None, None, 0.0, None, None)
    best_name, best = max(ok, key=lambda item: item[1].buy_price)
    worst_name, worst = min(ok, key=lambda item: item[1].buy_price)
    spread = 0.0
    if len(ok) >= 2:
        spread = (best.buy_price - worst.buy_price) / worst.buy_price * 100
    return ComparisonResult(
        pair=pair,
        quotes=quotes,
        best=best.buy_price,
        worst=worst.buy_price,
        spread_percent=spread,
        best_provider=best_name,
        worst_provider=worst_name,
    )


class RateAggregator:
    def __init__(self, registry: ProviderRegistry, default_providers: Sequence[str] = ()):
        self._registry = registry
        self.default_providers: List[str] = list(default_providers)

    async def compare(
        self, pair: str, provider_names: Optional[Iterable[str]] = None
    ) -> ComparisonResult:
        if provider_names is None:
            provider_names = self.default_providers
        names = list(dict.fromkeys(provider_names))
        results = await asyncio.gather(
            *(self._fetch(name, pair) for name in names), return_exceptions=True
        )
        quotes: Dict[str, RateQuote] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                # Runtimes never raise; this only guards third-party registrations.
                logger.error(
                    "provider raised during comparison: %r",
                    result,
                    extra={"provider": name, "pair": pair},
                )
                quotes[name] = RateQuote.failure(name, f"{type(result).__name__}: {result}")
            else:
                quotes[name] = result
        summary = summarize_quotes(pair, quotes)
        logger.debug(
            "compared %d provider(s), %d ok, spread %.4f%%",
            len(names),
            summary.successful_count,
            summary.spread_percent,
            extra={"pair": pair},
        )
        return summary

    async def best_quote(
        self, pair: str, provider_names: Optional[Iterable[str]] = None
    ) -> Optional[RateQuote]:
        return (await self.compare(pair, provider_names)).best_quote()

    async def _fetch(self, name: str, pair: str) -> RateQuote:
        runtime = self._registry.get(name)
        if runtime is None:
            return RateQuote.failure(name, f"Provider '{name}' is not registered")
        return await runtime.fetch_rate(pair)

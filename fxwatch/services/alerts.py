"""Alert evaluation engine.

One pass loads every eligible alert (active, not yet notified), resolves the
current rate once per distinct pair, and for each alert whose condition holds
claims it atomically in the database before notifying. Losing the claim means
another worker already fired it, so nothing is sent. Per-alert problems are
collected on the returned CheckSummary; a pass never raises.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from fxwatch.db.dal import Database
from fxwatch.models import NotificationPreference, RateAlert
from fxwatch.services.notifications import NotificationDispatcher
from fxwatch.services.rates.aggregator import RateAggregator
from fxwatch.services.rates.base import RateQuote, utc_now
from fxwatch.services.rates.registry import ProviderRegistry

logger = logging.getLogger(__name__)


@dataclass
class CheckSummary:
    checked_count: int = 0
    triggered_count: int = 0
    errors: List[str] = field(default_factory=list)
    triggered_alert_ids: List[int] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "checked_count": self.checked_count,
            "triggered_count": self.triggered_count,
            "errors": list(self.errors),
            "triggered_alert_ids": list(self.triggered_alert_ids),
        }


def evaluate(alert: RateAlert, current_rate: float) -> bool:
    """Pure condition check, independent of eligibility."""
    return alert.direction.is_met(current_rate, alert.target_rate)


class AlertEngine:
    def __init__(
        self,
        db: Database,
        registry: ProviderRegistry,
        dispatcher: NotificationDispatcher,
        *,
        provider_names: Sequence[str] = ("internal",),
        aggregator: Optional[RateAggregator] = None,
        concurrency: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ):
        if not provider_names:
            raise ValueError("at least one provider name is required")
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._db = db
        self._registry = registry
        self._dispatcher = dispatcher
        self.provider_names = list(provider_names)
        self._aggregator = aggregator or RateAggregator(registry, self.provider_names)
        self.concurrency = concurrency
        self._clock = clock

    async def resolve_rate(self, pair: str) -> RateQuote:
        """Current quote for ``pair`` from the designated provider(s)."""
        if len(self.provider_names) == 1:
            name = self.provider_names[0]
            runtime = self._registry.get(name)
            if runtime is None:
                return RateQuote.failure(name, f"Provider '{name}' is not registered")
            return await runtime.fetch_rate(pair)

        comparison = await self._aggregator.compare(pair, self.provider_names)
        best = comparison.best_quote()
        if best is not None:
            return best
        details = "; ".join(
            f"{name}: {q.error_detail}" for name, q in comparison.quotes.items()
        )
        return RateQuote.failure("aggregate", f"no provider returned a rate ({details})")

    async def check_all(self, user_id: Optional[str] = None) -> CheckSummary:
        summary = CheckSummary()
        try:
            alerts = self._db.list_eligible_alerts(user_id=user_id)
        except sqlite3.Error as e:
            logger.exception("failed to load eligible alerts")
            summary.errors.append(f"failed to load alerts: {e}")
            return summary
        await self._run(alerts, summary)
        logger.info(
            "alert pass: checked=%d triggered=%d errors=%d",
            summary.checked_count,
            summary.triggered_count,
            len(summary.errors),
        )
        return summary

    async def check_alert(self, alert_id: int) -> CheckSummary:
        """Evaluate one alert now; raises AlertNotFoundError for unknown ids."""
        alert = self._db.require_alert(alert_id)
        summary = CheckSummary()
        if alert.eligible:
            await self._run([alert], summary)
        return summary

    # Internal --------------------------------------------------
    async def _run(self, alerts: List[RateAlert], summary: CheckSummary) -> None:
        rates: Dict[str, "asyncio.Future[RateQuote]"] = {}
        gate = asyncio.Semaphore(self.concurrency)

        async def one(alert: RateAlert) -> None:
            async with gate:
                try:
                    await self._check_one(alert, rates, summary)
                except Exception as e:  # keep the batch going
                    logger.exception("alert evaluation failed", extra={"alert_id": alert.id})
                    summary.errors.append(f"alert {alert.id}: {type(e).__name__}: {e}")

        await asyncio.gather(*(one(a) for a in alerts))

    def _rate_for(self, pair: str, rates: Dict[str, "asyncio.Future[RateQuote]"]):
        # One fetch per pair per pass, shared by every alert on that pair
        if pair not in rates:
            rates[pair] = asyncio.ensure_future(self.resolve_rate(pair))
        return rates[pair]

    async def _check_one(
        self,
        alert: RateAlert,
        rates: Dict[str, "asyncio.Future[RateQuote]"],
        summary: CheckSummary,
    ) -> None:
        summary.checked_count += 1
        quote = await self._rate_for(alert.pair, rates)
        if not quote.ok:
            summary.errors.append(f"alert {alert.id}: no rate for {alert.pair}: {quote.error_detail}")
            return
        current = quote.buy_price
        if not evaluate(alert, current):
            return

        triggered_at = self._clock()
        try:
            claimed = self._db.claim_alert(alert.id, current, quote.provider_name, triggered_at)  # type: ignore[arg-type]
        except sqlite3.Error as e:
            logger.error("failed to claim alert: %s", e, extra={"alert_id": alert.id})
            summary.errors.append(f"alert {alert.id}: failed to persist trigger: {e}")
            return
        if not claimed:
            logger.info("alert already claimed elsewhere", extra={"alert_id": alert.id})
            return

        summary.triggered_count += 1
        summary.triggered_alert_ids.append(alert.id)  # type: ignore[arg-type]
        logger.info(
            "alert triggered at %.4f",
            current,
            extra={"alert_id": alert.id, "pair": alert.pair, "provider": quote.provider_name},
        )
        fired = alert.model_copy(update={"notified": True, "triggered_at": triggered_at})
        self._dispatcher.dispatch(fired, current, self._preference_for(alert.user_id))

    def _preference_for(self, user_id: str) -> Optional[NotificationPreference]:
        try:
            return self._db.get_preferences(user_id)
        except sqlite3.Error as e:
            logger.warning("failed to load preferences for %s, using defaults: %s", user_id, e)
            return None

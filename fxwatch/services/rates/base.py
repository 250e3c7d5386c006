from __future__ import annotations

"""Rate source abstraction.

Every data source normalizes its wire format into a single immutable
``RateQuote``. Sources never raise from ``fetch_rates``: malformed pairs,
unsupported pairs, a disabled source and transport errors all come back as a
failure quote (``ok=False``, both prices zero) so callers can always branch on
``quote.ok``. Only transport failures are flagged ``retryable``.
"""
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

PAIR_PATTERN = re.compile(r"^[A-Z]{3}_[A-Z]{3}$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_pair(pair: Any) -> bool:
    return isinstance(pair, str) and PAIR_PATTERN.match(pair) is not None


def split_pair(pair: str) -> Tuple[str, str]:
    """USD_EUR -> ("USD", "EUR"). Caller must have validated the pair."""
    base, quote = pair.split("_")
    return base, quote


def display_pair(pair: str, separator: str = "/") -> str:
    base, quote = split_pair(pair)
    return f"{base}{separator}{quote}"


@dataclass(frozen=True)
class RateQuote:
    """One provider's buy/sell price for a pair at a point in time.

    Never partially valid: either both prices are positive and ``ok`` is True,
    or both are zero and ``ok`` is False. ``retryable`` marks a failure caused
    by transport trouble (network, timeout, non-2xx) that a later attempt may
    not repeat; an answer the upstream gave deliberately is final.
    """

    provider_name: str
    buy_price: float
    sell_price: float
    as_of: datetime
    ok: bool
    error_detail: Optional[str] = None
    retryable: bool = False

    def __post_init__(self) -> None:
        if self.ok:
            if not (self.buy_price > 0 and self.sell_price > 0):
                raise ValueError(
                    f"successful quote requires positive prices (buy={self.buy_price}, sell={self.sell_price})"
                )
            if self.retryable:
                raise ValueError("only failure quotes can be retryable")
        elif self.buy_price != 0 or self.sell_price != 0:
            raise ValueError("failure quote must carry zero prices")

    @classmethod
    def success(
        cls,
        provider_name: str,
        buy_price: float,
        sell_price: float,
        as_of: Optional[datetime] = None,
    ) -> "RateQuote":
        return cls(
            provider_name=provider_name,
            buy_price=float(buy_price),
            sell_price=float(sell_price),
            as_of=as_of or utc_now(),
            ok=True,
        )

    @classmethod
    def failure(
        cls,
        provider_name: str,
        error_detail: str,
        as_of: Optional[datetime] = None,
        retryable: bool = False,
    ) -> "RateQuote":
        return cls(
            provider_name=provider_name,
            buy_price=0.0,
            sell_price=0.0,
            as_of=as_of or utc_now(),
            ok=False,
            error_detail=error_detail,
            retryable=retryable,
        )

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["as_of"] = self.as_of.isoformat()
        return data


@dataclass(frozen=True)
class ConfigField:
    """Display metadata for one tunable parameter of a source."""

    description: str
    type: Literal["text", "number", "boolean", "readonly"]
    value: Any = None
    placeholder: Optional[str] = None
    sensitive: bool = False
    readonly: bool = False
    min: Optional[float] = None
    max: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        data = {k: v for k, v in asdict(self).items() if v is not None}
        if self.sensitive and self.value:
            data["value"] = "********"
        return data


@dataclass(frozen=True)
class ProviderInfo:
    name: str
    display_name: str
    description: str
    website: Optional[str] = None
    supports_custom_pair: bool = False
    rate_types: Tuple[str, ...] = field(default=("mid",))


class RateSource(ABC):
    """Adapter contract for one external or internal rate source."""

    info: ProviderInfo

    def __init__(self) -> None:
        self.enabled = True

    @property
    def name(self) -> str:
        return self.info.name

    @abstractmethod
    async def fetch_rates(self, pair: str) -> RateQuote:
        """Return a quote for ``pair``; failures are returned, never raised."""
        raise NotImplementedError

    @abstractmethod
    def supports_pair(self, pair: str) -> bool:
        """Pure predicate, no I/O."""
        raise NotImplementedError

    @abstractmethod
    def config_schema(self) -> Dict[str, ConfigField]:
        raise NotImplementedError

    # Shared guards -----------------------------------------------
    def _precheck(self, pair: str) -> Optional[RateQuote]:
        """Failure quote for the cases every source rejects before any I/O."""
        if not self.enabled:
            return self.fail("Provider is disabled")
        if not is_valid_pair(pair):
            return self.fail(f"Invalid pair format: {pair!r}")
        if not self.supports_pair(pair):
            return self.fail(f"Pair {pair} not supported by {self.name} provider")
        return None

    def fail(self, detail: str, retryable: bool = False) -> RateQuote:
        return RateQuote.failure(self.name, detail, retryable=retryable)

    def available_pairs(self) -> List[str]:
        return []

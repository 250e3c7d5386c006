from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from fxwatch.services.rates.base import PAIR_PATTERN, utc_now


class AlertDirection(str, Enum):
    GTE = "gte"
    LTE = "lte"
    STRICT_ABOVE = "strict_above"
    STRICT_BELOW = "strict_below"

    @classmethod
    def parse(cls, value: Any) -> "AlertDirection":
        """Accept canonical names plus the operator and legacy spellings."""
        if isinstance(value, cls):
            return value
        key = str(value).strip()
        direction = _DIRECTION_ALIASES.get(key) or _DIRECTION_ALIASES.get(key.lower())
        if direction is None:
            raise ValueError(f"unknown alert direction {value!r}")
        return direction

    @property
    def symbol(self) -> str:
        return _DIRECTION_SYMBOLS[self]

    def is_met(self, current: float, target: float) -> bool:
        if self is AlertDirection.GTE:
            return current >= target
        if self is AlertDirection.LTE:
            return current <= target
        if self is AlertDirection.STRICT_ABOVE:
            return current > target
        return current < target


_DIRECTION_SYMBOLS = {
    AlertDirection.GTE: ">=",
    AlertDirection.LTE: "<=",
    AlertDirection.STRICT_ABOVE: ">",
    AlertDirection.STRICT_BELOW: "<",
}

_DIRECTION_ALIASES: Dict[str, AlertDirection] = {
    **{d.value: d for d in AlertDirection},
    ">=": AlertDirection.GTE,
    "<=": AlertDirection.LTE,
    ">": AlertDirection.STRICT_ABOVE,
    "<": AlertDirection.STRICT_BELOW,
    "above": AlertDirection.STRICT_ABOVE,
    "below": AlertDirection.STRICT_BELOW,
    "strictabove": AlertDirection.STRICT_ABOVE,
    "strictbelow": AlertDirection.STRICT_BELOW,
}


def normalize_pair(value: str) -> str:
    pair = str(value).strip().upper().replace("/", "_")
    if not PAIR_PATTERN.match(pair):
        raise ValueError("pair must look like USD_EUR")
    return pair


class RateAlert(BaseModel):
    """A user's standing request to be told when ``pair`` crosses ``target_rate``.

    Eligible for evaluation only while ``active`` and not yet ``notified``; the
    notified flag is flipped exactly once by the engine's atomic claim.
    """

    id: Optional[int] = None
    user_id: str = Field(..., min_length=1)
    pair: str
    target_rate: float = Field(..., gt=0)
    direction: AlertDirection
    active: bool = True
    notified: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    triggered_at: Optional[datetime] = None

    @field_validator("pair", mode="before")
    @classmethod
    def valid_pair(cls, v: str) -> str:
        return normalize_pair(v)

    @field_validator("direction", mode="before")
    @classmethod
    def valid_direction(cls, v: Any) -> AlertDirection:
        return AlertDirection.parse(v)

    @model_validator(mode="after")
    def notified_has_timestamp(self) -> "RateAlert":
        if self.notified and self.triggered_at is None:
            raise ValueError("a notified alert must carry triggered_at")
        return self

    @property
    def eligible(self) -> bool:
        return self.active and not self.notified

    @classmethod
    def from_row(cls, row: Any) -> "RateAlert":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            pair=row["pair"],
            target_rate=row["target_rate"],
            direction=row["direction"],
            active=bool(row["active"]),
            notified=bool(row["notified"]),
            created_at=row["created_at"],
            triggered_at=row["triggered_at"],
        )


class AlertCreate(BaseModel):
    user_id: str = Field(..., min_length=1)
    pair: str
    target_rate: float = Field(..., gt=0)
    direction: AlertDirection
    active: bool = True

    @field_validator("pair", mode="before")
    @classmethod
    def valid_pair(cls, v: str) -> str:
        return normalize_pair(v)

    @field_validator("direction", mode="before")
    @classmethod
    def valid_direction(cls, v: Any) -> AlertDirection:
        return AlertDirection.parse(v)


class AlertUpdate(BaseModel):
    pair: Optional[str] = None
    target_rate: Optional[float] = Field(None, gt=0)
    direction: Optional[AlertDirection] = None
    active: Optional[bool] = None

    @field_validator("pair", mode="before")
    @classmethod
    def valid_pair(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else normalize_pair(v)

    @field_validator("direction", mode="before")
    @classmethod
    def valid_direction(cls, v: Any) -> Optional[AlertDirection]:
        return None if v is None else AlertDirection.parse(v)


class AlertTrigger(BaseModel):
    """Audit row written in the same transaction as the notified flip."""

    id: Optional[int] = None
    alert_id: int
    rate: float
    provider_name: str
    triggered_at: datetime

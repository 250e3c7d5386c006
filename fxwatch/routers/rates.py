from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from fxwatch.routers.deps import (
    get_aggregator,
    get_registry,
    require_override_enabled,
    require_runtime,
)
from fxwatch.services.rates.aggregator import RateAggregator
from fxwatch.services.rates.providers import INTERNAL, InternalFeedSource
from fxwatch.services.rates.registry import ProviderRegistry

"""Rates router.

Endpoints:
    - GET /rates/providers                     -> registered providers with settings
    - PATCH /rates/providers/{name}/settings   -> tune enable/cache/retry/timeout
    - GET /rates/{pair}?provider=              -> single provider quote
    - GET /rates/{pair}/compare?providers=a,b  -> side-by-side comparison
    - PUT /rates/internal/{pair}               -> set an internal feed quote (guarded
                                                  by settings.enable_rate_override)
    - DELETE /rates/cache?provider=            -> drop cached quotes
"""

router = APIRouter(prefix="/rates", tags=["rates"])


class ProviderSettingsPatch(BaseModel):
    enabled: Optional[bool] = None
    cache_ttl_seconds: Optional[float] = Field(None, ge=0)
    max_retries: Optional[int] = Field(None, ge=1, le=10)
    request_timeout_seconds: Optional[float] = Field(None, gt=0)
    backoff_base_seconds: Optional[float] = Field(None, ge=0)


class InternalRatePayload(BaseModel):
    buy_price: float = Field(..., gt=0)
    sell_price: Optional[float] = Field(None, gt=0, description="Defaults to buy_price")


@router.get("/providers", summary="List registered rate providers")
async def list_providers(registry: ProviderRegistry = Depends(get_registry)) -> List[Dict[str, Any]]:
    return [require_runtime(name, registry).describe() for name in registry.list_registered()]


@router.patch("/providers/{name}/settings", summary="Update a provider's runtime settings")
async def update_provider_settings(
    name: str,
    payload: ProviderSettingsPatch,
    registry: ProviderRegistry = Depends(get_registry),
):
    runtime = require_runtime(name, registry)
    changes: Dict[str, Any] = {}
    if payload.enabled is not None:
        changes["enabled"] = payload.enabled
    if payload.cache_ttl_seconds is not None:
        changes["cache_ttl"] = timedelta(seconds=payload.cache_ttl_seconds)
    if payload.max_retries is not None:
        changes["max_retries"] = payload.max_retries
    if payload.request_timeout_seconds is not None:
        changes["request_timeout"] = timedelta(seconds=payload.request_timeout_seconds)
    if payload.backoff_base_seconds is not None:
        changes["backoff_base"] = payload.backoff_base_seconds
    try:
        updated = runtime.update_settings(**changes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return {"provider": name, "settings": updated.as_dict()}


@router.delete("/cache", summary="Clear cached quotes")
async def clear_cache(
    provider: Optional[str] = Query(None, description="Limit to one provider"),
    registry: ProviderRegistry = Depends(get_registry),
):
    names = [provider] if provider else registry.list_registered()
    cleared = {name: require_runtime(name, registry).invalidate() for name in names}
    return {"status": "ok", "cleared": cleared}


@router.put("/internal/{pair}", summary="Set a quote on the internal feed")
async def set_internal_rate(
    pair: str,
    payload: InternalRatePayload,
    _: bool = Depends(require_override_enabled),
    registry: ProviderRegistry = Depends(get_registry),
):
    pair = pair.upper()
    runtime = require_runtime(INTERNAL, registry)
    source = runtime.source
    if not isinstance(source, InternalFeedSource):
        raise HTTPException(status_code=409, detail="internal provider does not accept manual rates")
    try:
        source.set_rate(pair, payload.buy_price, payload.sell_price)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    runtime.invalidate(pair)
    return {"status": "ok", "pair": pair, "buy_price": payload.buy_price,
            "sell_price": payload.sell_price or payload.buy_price}


@router.get("/{pair}", summary="Current quote from one provider")
async def get_rate(
    pair: str,
    provider: str = Query(INTERNAL, description="Registered provider name"),
    registry: ProviderRegistry = Depends(get_registry),
):
    runtime = require_runtime(provider, registry)
    quote = await runtime.fetch_rate(pair.upper())
    return {"pair": pair.upper(), **quote.as_dict()}


@router.get("/{pair}/compare", summary="Compare one pair across providers")
async def compare_rates(
    pair: str,
    providers: Optional[str] = Query(None, description="Comma separated provider names"),
    aggregator: RateAggregator = Depends(get_aggregator),
):
    names = [p.strip() for p in providers.split(",") if p.strip()] if providers else None
    result = await aggregator.compare(pair.upper(), names)
    return result.as_dict()

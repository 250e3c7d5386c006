"""Request-scoped accessors for the services built once in create_app."""

from fastapi import Depends, HTTPException, Request

from fxwatch.core.config import Settings
from fxwatch.db.dal import Database
from fxwatch.services.alerts import AlertEngine
from fxwatch.services.rates.aggregator import RateAggregator
from fxwatch.services.rates.registry import ProviderRegistry
from fxwatch.services.rates.runtime import ProviderRuntime
from fxwatch.services.scheduler import AlertScheduler


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_aggregator(request: Request) -> RateAggregator:
    return request.app.state.aggregator


def get_engine(request: Request) -> AlertEngine:
    return request.app.state.engine


def get_scheduler(request: Request) -> AlertScheduler | None:
    return request.app.state.scheduler


def require_runtime(name: str, registry: ProviderRegistry) -> ProviderRuntime:
    runtime = registry.get(name)
    if runtime is None:
        raise HTTPException(status_code=404, detail=f"unknown provider '{name}'")
    return runtime


def require_override_enabled(settings: Settings = Depends(get_app_settings)) -> bool:
    if not settings.enable_rate_override:
        raise HTTPException(status_code=403, detail="rate override feature disabled")
    return True

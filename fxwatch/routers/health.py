import asyncio

from fastapi import APIRouter, Depends

from fxwatch.core.config import Settings
from fxwatch.routers.deps import get_app_settings, get_registry, require_runtime
from fxwatch.services.rates.registry import ProviderRegistry

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(
    settings: Settings = Depends(get_app_settings),
    registry: ProviderRegistry = Depends(get_registry),
):
    return {
        "status": "ok",
        "version": settings.version,
        "providers": registry.list_registered(),
    }


@router.get("/health/providers", summary="Probe every registered provider")
async def provider_health(registry: ProviderRegistry = Depends(get_registry)):
    runtimes = {name: require_runtime(name, registry) for name in registry.list_registered()}
    results = await asyncio.gather(*(rt.health_check() for rt in runtimes.values()))
    healthy = dict(zip(runtimes, results))
    return {
        "status": "ok" if all(healthy.values()) else "degraded",
        "providers": healthy,
    }

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.config import get_settings, Settings
from .core.logging import init_logging, request_context_middleware
from .core import errors
from .db.dal import Database
from .db.migrate import apply_migrations
from .routers import alerts, health, notifications, rates
from .services.alerts import AlertEngine
from .services.notifications import NotificationDispatcher
from .services.rates.aggregator import RateAggregator
from .services.rates.providers import create_default_registry
from .services.scheduler import AlertScheduler

logger = logging.getLogger("fxwatch")


def create_app(settings_override: Settings | None = None) -> FastAPI:
    """Application factory.

    settings_override: pass an already constructed Settings instance for tests
    to isolate environment (e.g., temp DB). Falls back to cached get_settings().
    Run with ``uvicorn fxwatch.main:create_app --factory``.
    """
    settings = settings_override or get_settings()
    if settings_override is not None:
        settings.init_post_load()
    # Initialize logging early
    init_logging(debug=settings.debug)

    # Ensure database schema (idempotent) so test-injected fresh DBs have tables
    try:
        apply_migrations(settings.db_path)  # type: ignore[arg-type]
    except Exception:
        logger.exception("failed to apply migrations on startup")
        raise

    db = Database(settings.db_path)  # type: ignore[arg-type]
    registry = create_default_registry(settings)
    aggregator = RateAggregator(registry, default_providers=settings.comparison_providers)
    dispatcher = NotificationDispatcher(db)
    engine = AlertEngine(
        db,
        registry,
        dispatcher,
        provider_names=settings.alert_providers,
        aggregator=aggregator,
        concurrency=settings.alert_check_concurrency,
    )
    scheduler = (
        AlertScheduler(engine, settings.alert_check_interval_seconds)
        if settings.alert_check_interval_seconds > 0
        else None
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if scheduler is not None:
            await scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                await scheduler.stop()

    app = FastAPI(
        title=settings.app_name, debug=settings.debug, version=settings.version, lifespan=lifespan
    )
    app.state.settings = settings
    app.state.db = db
    app.state.registry = registry
    app.state.aggregator = aggregator
    app.state.engine = engine
    app.state.scheduler = scheduler

    # Middleware (request id / structured logging)
    app.middleware("http")(request_context_middleware)

    # Error handlers
    app.add_exception_handler(StarletteHTTPException, errors.http_error_handler)
    app.add_exception_handler(errors.AlertNotFoundError, errors.alert_not_found_handler)
    app.add_exception_handler(RequestValidationError, errors.validation_error_handler)
    app.add_exception_handler(Exception, errors.server_error_handler)

    # Routers
    app.include_router(health.router)
    app.include_router(rates.router)
    app.include_router(alerts.router)
    app.include_router(notifications.router)

    @app.get("/")
    async def root():
        return {"message": "fxwatch rate alert API", "version": settings.version}

    return app

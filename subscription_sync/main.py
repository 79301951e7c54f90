"""FastAPI application entry point and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from subscription_sync.logging_config import configure_logging, get_logger
from subscription_sync.middleware import ContextMiddleware, RequestLoggingMiddleware

VERSION = "0.1.0"

# Initialize logger
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Loads configuration eagerly so a broken offers.yaml fails at startup,
    and flushes the alert publisher on shutdown.
    """
    logger.info("service_starting", version=VERSION)

    try:
        from subscription_sync.repositories.offer_repository import get_offer_repository
        from subscription_sync.services.alert_dispatcher import get_alert_dispatcher

        offers = get_offer_repository()
        dispatcher = get_alert_dispatcher()
        if dispatcher.is_enabled():
            logger.info("alerts_enabled", message="Alert dispatcher publishing to Pub/Sub")
        else:
            logger.info("alerts_disabled", message="Alerts are logged only")

        logger.info("service_started", status="ready", offers=len(offers))
        yield
    finally:
        logger.info("service_shutting_down")
        from subscription_sync.services.alert_dispatcher import get_alert_dispatcher

        get_alert_dispatcher().shutdown()
        logger.info("service_stopped")


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    app = FastAPI(
        title="Subscription Sync",
        description="Keeps payment provider subscriptions and course access in sync",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    include_request_details = os.getenv("LOG_REQUEST_DETAILS", "true").lower() == "true"
    app.add_middleware(RequestLoggingMiddleware, include_request_details=include_request_details)
    app.add_middleware(ContextMiddleware)

    # Register routers
    from subscription_sync.api.cancel import router as cancel_router
    from subscription_sync.api.checkout import router as checkout_router
    from subscription_sync.api.cron import router as cron_router
    from subscription_sync.api.operator import router as operator_router
    from subscription_sync.api.webhooks import router as webhooks_router
    from subscription_sync.repositories.mapping_store import MappingStore, get_mapping_store

    app.include_router(checkout_router)
    app.include_router(webhooks_router)
    app.include_router(cancel_router)
    app.include_router(operator_router)
    app.include_router(cron_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Liveness endpoint."""
        logger.debug("root_endpoint_called")
        return {
            "service": "subscription-sync",
            "status": "running",
            "version": VERSION,
        }

    @app.get("/health")
    def health(store: MappingStore = Depends(get_mapping_store)) -> JSONResponse:
        """Readiness: 503 while the mapping store is unreachable."""
        from subscription_sync.repositories.offer_repository import get_offer_repository
        from subscription_sync.services.alert_dispatcher import get_alert_dispatcher

        store_ok = store.ping()
        body = {
            "status": "healthy" if store_ok else "degraded",
            "version": VERSION,
            "store": "connected" if store_ok else "unreachable",
            "alerts": "connected" if get_alert_dispatcher().is_enabled() else "disabled",
            "config": f"loaded ({len(get_offer_repository())} offers)",
        }
        if not store_ok:
            logger.warning("health_degraded", store="unreachable")
        return JSONResponse(status_code=200 if store_ok else 503, content=body)

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    logger.info("app_created", endpoints=len(app.routes))
    return app


# Create app instance
app = create_app()

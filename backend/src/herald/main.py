"""FastAPI application entry-point.

Assembles routers, middleware, exception handlers, and lifecycle hooks.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from herald.adapters.inbound.rest.routers import (
    admin_router,
    health_router,
    notifications_router,
    rate_limits_router,
    webhooks_router,
)
from herald.config import Settings, get_settings
from herald.dependencies import Container, build_container
from herald.shared.errors import register_exception_handlers
from herald.shared.middleware import (
    LoggingMiddleware,
    MetricsMiddleware,
    RequestContextMiddleware,
)
from herald.shared.observability import configure_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifecycle — startup & shutdown hooks."""
    settings: Settings = app.state.settings
    container: Container = app.state.container
    configure_logging(
        log_level=settings.log_level,
        json_logs=settings.is_production,
    )
    logger.info(
        "application_starting",
        env=settings.app_env.value,
        state_backend=settings.state_backend,
        persistence_backend=settings.persistence_backend,
        providers={c.value: [h.provider_id for h in container.router.handles(c)] for c in container.router.channels},
    )
    await container.startup()

    yield

    await container.shutdown()
    logger.info("application_shutdown")


def create_app(settings: Settings | None = None, container: Container | None = None) -> FastAPI:
    """Application factory — creates a fully configured FastAPI instance."""
    settings = settings or (container.settings if container else get_settings())
    container = container or build_container(settings)

    app = FastAPI(
        title="Herald Notification Engine",
        description=(
            "Multi-tenant notification delivery: hierarchical rate limiting, "
            "cost budgets, provider failover behind circuit breakers, "
            "scheduled retries and delivery-receipt webhooks."
        ),
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.container = container

    # ── Middleware (order matters: last added = outermost) ────
    cors_origins = settings.cors_origins
    # CORSMiddleware does not allow ["*"] together with credentials
    allow_all_origins = "*" in cors_origins

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[] if allow_all_origins else cors_origins,
        allow_origin_regex=".*" if allow_all_origins else None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if settings.prometheus_enabled:
        app.add_middleware(MetricsMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestContextMiddleware)

    # ── Exception handlers ───────────────────────────────────
    register_exception_handlers(app)

    # ── REST routers (versioned) ─────────────────────────────
    api_v1 = "/api/v1"
    app.include_router(health_router, prefix=api_v1)
    app.include_router(notifications_router, prefix=api_v1)
    app.include_router(rate_limits_router, prefix=api_v1)
    app.include_router(webhooks_router, prefix=api_v1)
    app.include_router(admin_router, prefix=api_v1)

    @app.get("/")
    async def root():
        return {
            "message": f"{settings.app_name} is running",
            "docs": "/docs",
            "health": "/api/v1/health",
        }

    return app


# Uvicorn entry-point: ``uvicorn herald.main:app``
app = create_app()

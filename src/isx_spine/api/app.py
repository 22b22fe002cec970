"""
FastAPI application factory.

``create_app()`` wires middleware, routers, error handlers, and lifespan
events into a single ``FastAPI`` instance around one :class:`Engine`.

Manifesto:
    The app factory is the HTTP composition root: the engine is built (or
    injected) here, started in the lifespan and stopped on shutdown, so
    the rest of the codebase never touches ``FastAPI`` directly.

Tags:
    api, app-factory, composition-root, FastAPI

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from isx_spine.api.middleware.errors import (
    request_validation_handler,
    spine_error_handler,
    unhandled_exception_handler,
)
from isx_spine.api.middleware.request_id import RequestIDMiddleware
from isx_spine.core.errors import SpineError
from isx_spine.core.logging import get_logger
from isx_spine.core.settings import EngineSettings, get_settings
from isx_spine.engine import Engine


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: start the engine, stop it on shutdown."""
    log = get_logger("isx_spine.api")
    engine: Engine = app.state.engine
    await engine.start()
    log.info("api.start", version=app.version, step_types=engine.registry.types())
    try:
        yield
    finally:
        await engine.stop()
        log.info("api.stop")


def create_app(
    *,
    settings: EngineSettings | None = None,
    engine: Engine | None = None,
) -> FastAPI:
    """Build and return a fully-configured FastAPI application.

    Parameters
    ----------
    settings : EngineSettings | None
        Override settings (useful for testing). When ``None`` the cached
        singleton from :func:`get_settings` is used.
    engine : Engine | None
        Pre-built engine, e.g. with a test step registry.
    """
    settings = settings or (engine.settings if engine is not None else get_settings())
    engine = engine or Engine(settings)

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
        openapi_url=f"{settings.api_prefix}/openapi.json",
    )

    app.state.settings = settings
    app.state.engine = engine

    # Override DI so endpoints use the provided settings
    app.dependency_overrides[get_settings] = lambda: settings

    # ── Middleware (outermost → innermost) ────────────────────────────
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Exception handlers ───────────────────────────────────────────
    app.add_exception_handler(SpineError, spine_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # ── Routers ──────────────────────────────────────────────────────
    from isx_spine.api.routers import health, operations, stream

    app.include_router(health.router)
    app.include_router(operations.router, prefix=settings.api_prefix, tags=["operations"])
    app.include_router(stream.router, tags=["stream"])

    # ── Metrics endpoint (root-level, Prometheus format) ─────────
    @app.get("/metrics", tags=["observability"], response_class=PlainTextResponse)
    async def metrics_endpoint():
        """Export Prometheus-compatible metrics."""
        return PlainTextResponse(
            content=engine.metrics.registry.export_prometheus(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return app

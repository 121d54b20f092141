"""Infra plane FastAPI application factory.

The create_app() factory is the single entry point for building the ASGI
application. It wires middleware (request-ID, metrics, request logging),
the provisioning routes, and a lifespan that recovers persisted sessions on
startup and drains in-flight jobs on shutdown.

Usage:
    # Local development (real terraform binary)
    from infra_plane.app import create_app, EngineSettings
    app = create_app(EngineSettings())

    # Production
    app = create_app(EngineSettings.from_env())

    # Testing (full DI control)
    app = create_app(settings, engine=engine_with_in_memory_provisioner)
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import Response

from .observability import configure_logging, get_logger, metrics_text
from .observability.middleware import (
    MetricsMiddleware,
    RequestIdMiddleware,
    RequestLoggingMiddleware,
)
from .provisioning.engine import ProvisioningEngine, build_engine
from .routes.provisioning import create_provisioning_router
from .settings import EngineSettings

logger = get_logger(__name__)


def create_app(
    settings: EngineSettings | None = None,
    *,
    engine: ProvisioningEngine | None = None,
) -> FastAPI:
    """Create a configured infra-plane FastAPI application.

    Args:
        settings: Engine settings. Defaults to local-dev settings.
        engine: Pre-built engine override. When None, one is built from
            ``settings`` and drives the real Terraform binary.

    Returns:
        Configured FastAPI application ready for uvicorn.run().

    Raises:
        ValueError: If settings validation fails.
    """
    if settings is None:
        settings = engine.settings if engine is not None else EngineSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Infra plane settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    configure_logging()

    if engine is None:
        engine = build_engine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("infra_plane_startup", environment=settings.environment)
        report = engine.recover()
        logger.info(
            "sessions_recovered",
            recovered=len(report.recovered),
            coerced=len(report.coerced),
            failed=len(report.failed),
        )
        yield
        await engine.shutdown(settings.shutdown_timeout_seconds)
        logger.info("infra_plane_shutdown")

    app = FastAPI(
        title="Infra Plane",
        description="Per-session Terraform provisioning orchestration API",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.engine = engine
    app.state.settings = settings

    # ── Middleware stack (applied in reverse order) ──────────────
    # Order of execution: RequestID -> Metrics -> RequestLogging -> route handler
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    # ── Routes ──────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "service": "Infrastructure Management Service",
            "environment": settings.environment,
        }

    @app.get("/metrics")
    async def prometheus_metrics():
        body, content_type = metrics_text()
        return Response(content=body, media_type=content_type)

    app.include_router(create_provisioning_router(engine))

    return app


# For uvicorn, use --factory flag:
#   uvicorn infra_plane.app.main:create_app --factory
# This avoids executing create_app() at import time.

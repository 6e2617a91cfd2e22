"""Vigor API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.config import get_settings
from src.dependencies import RecoveryServices, build_services
from src.recovery.errors import InvalidRangeError, SyncError
from src.recovery.postgres_store import PostgresMetricsStore
from src.recovery.store import InMemoryMetricsStore, MetricsStore
from src.routers import health, recovery
from src.services.database import close_pool, init_pool

logger = logging.getLogger("vigor")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting Vigor API v%s [%s]",
        settings.app_version,
        settings.environment,
    )

    owns_pool = False
    if getattr(app.state, "services", None) is None:
        store: MetricsStore
        if settings.database_url:
            pool = await init_pool(settings)
            owns_pool = True
            store = PostgresMetricsStore(pool)
            await store.ensure_schema()
        else:
            logger.warning("DATABASE_URL not set; using the in-memory metrics store")
            store = InMemoryMetricsStore()
        app.state.services = build_services(settings, store)

    services: RecoveryServices = app.state.services
    if services.settings.background_sync_enabled:
        services.scheduler.start()

    yield

    await services.scheduler.stop()
    if owns_pool:
        await close_pool()
    logger.info("Vigor API shut down")


# ---------- Error handlers ----------

async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc), "retryable": exc.retryable},
    )


async def invalid_range_handler(request: Request, exc: InvalidRangeError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# ---------- App factory ----------

def create_app(services: RecoveryServices | None = None) -> FastAPI:
    """Build the app.  Pass ``services`` to skip lifespan wiring (tests, embedding)."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Vigor API",
        description=(
            "Recovery readiness engine — daily HRV, resting heart rate, sleep "
            "and temperature fused into a 0–100 Vigor score."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(SyncError, sync_error_handler)
    app.add_exception_handler(InvalidRangeError, invalid_range_handler)

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(recovery.router, prefix="/api/v1")

    return app


app = create_app()

"""
Listopia Chat Integrity - FastAPI Application

Admin and operational surface for the conversation integrity engine.
Provides:
- Liveness, readiness and aggregate health probes
- Prometheus metrics
- Conversation health administration (stats, heal, checkpoints, merges)
- The in-process conversation health scheduler

Run with:
    uvicorn src.api.main:app --host 0.0.0.0 --port 8000
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from src.api.middleware import REQUEST_ID_HEADER, RequestIDMiddleware, get_cors_origins
from src.api.routes import conversation_health, health
from src.config import get_settings
from src.db.client import close_db, init_db
from src.jobs.scheduler import init_scheduler, shutdown_scheduler
from src.kernel.http.errors import register_exception_handlers
from src.kernel.logging import configure_logging
from src.monitoring.metrics import get_metrics

APP_VERSION = "0.1.0"

configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan - startup and shutdown."""
    settings = get_settings()

    logger.info(
        "Starting Listopia Chat Integrity",
        version=APP_VERSION,
        environment=settings.environment,
    )
    get_metrics().set_build_info(APP_VERSION)

    await init_db()
    logger.info("PostgreSQL connection initialized")

    if settings.environment == "test":
        logger.info("Skipping conversation health scheduler in test environment")
    else:
        await init_scheduler()

    yield

    logger.info("Shutting down Listopia Chat Integrity")
    if settings.environment != "test":
        await shutdown_scheduler()
    await close_db()


app = FastAPI(
    title="Listopia Chat Integrity API",
    description="Validation, self-healing and recovery for chat conversations",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

register_exception_handlers(app)

app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=[REQUEST_ID_HEADER],
)

# Prometheus metrics endpoint
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

app.include_router(health.router, tags=["Health"])
app.include_router(conversation_health.router, prefix="/api/v1")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Listopia Chat Integrity API",
        "version": APP_VERSION,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }

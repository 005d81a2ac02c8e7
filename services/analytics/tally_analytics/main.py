"""FastAPI application entry point for the Tally analytics service."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI

from tally_analytics.aggregators import get_scheduler, start_scheduler, stop_scheduler
from tally_analytics.api import analytics_router
from tally_analytics.consumers import get_consumer, start_consumer, stop_consumer
from tally_analytics.core.config import get_settings
from tally_analytics.core.database import close_db
from tally_analytics.core.errors import register_error_handlers
from tally_analytics.core.observability import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    setup_observability,
)
from tally_analytics.services.aggregate_store import AggregateStore
from tally_analytics.services.dual_write import DualWriteHandler
from tally_analytics.services.settings_provider import get_settings_provider
from tally_analytics.telemetry.query import close_telemetry_client, get_telemetry_client
from tally_analytics.telemetry.writer import get_telemetry_writer

settings = get_settings()
logger = structlog.get_logger()

_dual_write: DualWriteHandler | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown events."""
    global _dual_write

    logger.info("Starting Tally Analytics", version=settings.app_version)

    telemetry = get_telemetry_client()
    if not telemetry.has_credentials:
        logger.warning("Telemetry credentials missing; live reads and aggregation are disabled")
    elif telemetry.config.dataset_error:
        logger.error("Telemetry dataset misconfigured", error=telemetry.config.dataset_error)

    writer = get_telemetry_writer()
    consumer = get_consumer()
    consumer.register_handler(writer.handle_click)

    if settings.dual_write_enabled:
        _dual_write = DualWriteHandler(
            AggregateStore(batch_size=settings.aggregation_batch_size),
            get_settings_provider(),
            writer,
        )
        consumer.register_handler(_dual_write.handle_click)
        logger.info("Dual-write to durable aggregates enabled")

    await start_consumer()
    await start_scheduler()

    yield

    logger.info("Shutting down Tally Analytics")

    await stop_scheduler()
    await stop_consumer()
    await writer.aclose()
    await close_telemetry_client()

    await close_db()
    logger.info("Database connections closed")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Hybrid analytics query routing and aggregation for link clicks",
    lifespan=lifespan,
)

# Set up observability (logging, tracing, metrics, error tracking)
setup_observability(app)

# Order matters: RequestID first, then logging
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestIDMiddleware)

register_error_handlers(app)
app.include_router(analytics_router)


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    consumer = get_consumer()
    telemetry_configured = get_telemetry_client().is_configured
    healthy = consumer.is_running and telemetry_configured
    return {
        "status": "healthy" if healthy else "degraded",
        "service": "analytics",
        "consumer_running": consumer.is_running,
        "telemetry_configured": telemetry_configured,
    }


@app.get("/stats")
async def service_stats() -> dict:
    """Get service statistics."""
    aggregation = await get_settings_provider().get()
    return {
        "service": "analytics",
        "version": settings.app_version,
        "consumer": get_consumer().stats,
        "telemetry_writer": get_telemetry_writer().stats,
        "dual_write": _dual_write.stats if _dual_write else None,
        "scheduler": get_scheduler().stats,
        "aggregation": {
            "enabled": aggregation.enabled,
            "threshold_days": aggregation.threshold_days,
        },
    }


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {"message": "Tally Analytics", "version": settings.app_version}

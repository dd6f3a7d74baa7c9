"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from prometheus_fastapi_instrumentator import Instrumentator

from listing_healer.api.routes import items
from listing_healer.config import settings
from listing_healer.container import build_components
from listing_healer.db.models import Base
from listing_healer.db.session import AsyncSessionLocal, engine
from listing_healer.logging_config import setup_logging
from listing_healer.worker.scheduler import setup_scheduler

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting Listing Healer...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    components = build_components(AsyncSessionLocal, settings)
    app.state.components = components

    await components.consumer.start(settings.worker_concurrency)

    scheduler = setup_scheduler(components.probe_scheduler, components.risk_scorer, settings)
    scheduler.start()
    logger.info("Scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down...")

    scheduler.shutdown(wait=False)
    await components.consumer.stop()
    await components.close()
    await engine.dispose()

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Listing Healer",
    description="Monitor supplier listings and auto-heal removed products",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/metrics", "/health"],
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

app.include_router(items.router)


@app.get("/health")
async def health(request: Request):
    """Health check endpoint."""
    components = getattr(request.app.state, "components", None)
    body = {"status": "healthy"}
    if components is not None and hasattr(components.queue, "stats"):
        try:
            body["queue"] = await components.queue.stats(settings.probe_queue_name)
        except Exception as e:
            logger.warning(f"Queue stats unavailable: {e}")
            body["status"] = "degraded"
    return body


if __name__ == "__main__":
    # Run with uvicorn
    uvicorn.run(
        "listing_healer.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )

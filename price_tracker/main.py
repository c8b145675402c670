"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from price_tracker.config import settings
from price_tracker.db.models import Base
from price_tracker.db.session import engine
from price_tracker.logging_config import setup_logging
from price_tracker.worker.scheduler import setup_scheduler
from price_tracker.worker.tasks import ScrapeRunner

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting price tracker...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    runner = ScrapeRunner()
    await runner.initialize()
    app.state.runner = runner

    scheduler = setup_scheduler(runner)
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("Scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    scheduler.shutdown(wait=False)
    await runner.close()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Price Tracker",
    description="Periodic storefront crawl and price history",
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


@app.get("/health")
async def health():
    """Health check endpoint."""
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "healthy",
        "scheduler_running": bool(scheduler and scheduler.running),
    }


if __name__ == "__main__":
    uvicorn.run(
        "price_tracker.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )

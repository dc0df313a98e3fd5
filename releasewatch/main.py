"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from releasewatch.api.deps import get_database
from releasewatch.api.routes import newsletter, versions, webhooks
from releasewatch.config import settings
from releasewatch.db.models import Base
from releasewatch.db.session import engine
from releasewatch.logging_config import setup_logging
from releasewatch.worker.scheduler import setup_scheduler
from releasewatch.worker.tasks import task_runner

logger = logging.getLogger(__name__)

# Global scheduler
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduler

    setup_logging()

    # Startup
    logger.info("Starting Release Watch...")

    # Initialize database
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Initialize task runner
    await task_runner.initialize()

    # Start scheduler
    if settings.scheduler_enabled:
        scheduler = setup_scheduler()
        scheduler.start()
        logger.info("Scheduler started")
    else:
        logger.info("Scheduler disabled; queue and dispatch run only on request")

    yield

    # Shutdown
    logger.info("Shutting down...")

    if scheduler:
        scheduler.shutdown()
        scheduler = None

    await task_runner.close()
    await engine.dispose()

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Release Watch",
    description="Track software versions and send notification digests",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

# Include API routes
app.include_router(newsletter.router)
app.include_router(versions.router)
app.include_router(webhooks.router)


@app.get("/health")
async def health(db: AsyncSession = Depends(get_database)):
    """Health check: database reachability and scheduler state."""
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Health check database query failed: {e}")
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "database": "unavailable"},
        )

    return {
        "status": "healthy",
        "database": "ok",
        "scheduler": "running" if scheduler and scheduler.running else "stopped",
        "version": app.version,
    }


if __name__ == "__main__":
    # Run with uvicorn
    uvicorn.run(
        "releasewatch.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )

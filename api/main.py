"""
FastAPI application initialization
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from api.routes import health, stats, checkpoints
from core.config import settings
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from pipeline.scheduler import MigrationScheduler

setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the migration scheduler with the app and drain it on shutdown"""
    logger.info("Starting search index migration service")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")
    logger.info(f"Migrating {settings.SOURCE_INDEX} -> {settings.DESTINATION_INDEX} as stream {settings.STREAM_NAME}")

    scheduler = MigrationScheduler(settings)
    scheduler.start()
    app.state.scheduler = scheduler
    try:
        yield
    finally:
        logger.info("Shutting down search index migration service")
        await scheduler.stop()


# Create FastAPI app
app = FastAPI(
    title="Search Index Migration API",
    description="Operational endpoints for the incremental watch-profile migration",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(stats.router)
app.include_router(checkpoints.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Search Index Migration API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "stats": "/stats",
            "checkpoints": "/checkpoints"
        }
    }


def run() -> None:
    """Serve the API on API_HOST:API_PORT"""
    uvicorn.run(
        "api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()

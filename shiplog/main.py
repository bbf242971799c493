"""
FastAPI application entry point.
"""

from fastapi import FastAPI

from shiplog import __version__
from shiplog.config import settings
from shiplog.api import reports, webhooks
from shiplog.models.api_response import HealthResponse
from shiplog.utils.logging import setup_logging, get_logger
from shiplog.utils.resilience import TransientError

# Configure structured logging
setup_logging(settings.log_level)

logger = get_logger(__name__)

# Create FastAPI application
app = FastAPI(
    title="shiplog",
    description="Pull request activity ingestion and stakeholder reporting",
    version=__version__
)


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint for container orchestration."""
    from shiplog.services.container import get_container

    errors = []
    queues = {}
    redis_status = "connected"
    try:
        redis_client = get_container().redis
        await redis_client.ping()
        queues = await redis_client.get_queue_lengths()
    except (TransientError, RuntimeError) as e:
        redis_status = "disconnected"
        errors.append(str(e))

    return HealthResponse(
        status="healthy" if not errors else "degraded",
        version=__version__,
        redis=redis_status,
        queues=queues,
        errors=errors,
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "shiplog API",
        "version": __version__,
        "docs": "/docs"
    }


# Include API routers
app.include_router(webhooks.router)
app.include_router(reports.router)


@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup."""
    logger.info("Starting shiplog API")

    from shiplog.services.container import get_container
    await get_container().redis.initialize()
    logger.info("Redis client initialized")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup services on application shutdown."""
    logger.info("Shutting down shiplog API")

    from shiplog.services.container import get_container
    await get_container().close()
    logger.info("Services closed")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from bugbridge import __version__
from bugbridge.api import bridge
from bugbridge.config import settings
from bugbridge.models.base import init_db
from bugbridge.scheduler import scheduler

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info(f"Starting bug bridge for {settings.normalized_base_url} project {settings.gitlab_project}")
    init_db()
    if settings.scheduler_enabled:
        scheduler.start()
    yield
    logger.info("Stopping bug bridge")
    if settings.scheduler_enabled:
        scheduler.stop()


app = FastAPI(
    title="Bug Bridge",
    description="Bidirectional bridge between a local bug store and GitLab issues",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(bridge.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "Bug Bridge"}


def main():
    import uvicorn

    uvicorn.run(
        "bugbridge.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()

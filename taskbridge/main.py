"""TaskBridge service entry point"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from taskbridge.api import sync
from taskbridge.config import settings
from taskbridge.models.base import init_db
from taskbridge.scheduler import scheduler
from taskbridge.security import PUBLIC_PATHS, BearerTokenMiddleware

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _warn_on_missing_credentials():
    missing = [
        name
        for name, value in (
            ("GITHUB_TOKEN", settings.github_token),
            ("TODOIST_API_TOKEN", settings.todoist_api_token),
            ("ORG_MAPPINGS", settings.org_mappings),
        )
        if not value
    ]
    if missing:
        logger.warning(f"{', '.join(missing)} not set; sync cycles will fail until configured")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    _warn_on_missing_credentials()
    if settings.scheduler_enabled:
        scheduler.start()
        logger.info(f"Polling every {settings.polling_interval_minutes} minute(s)")
    else:
        logger.info("Scheduler disabled; cycles run only via POST /api/sync/trigger")
    yield
    if settings.scheduler_enabled:
        scheduler.stop()
    logger.info("TaskBridge stopped")


app = FastAPI(
    title="TaskBridge",
    description="Keep GitHub issues and Todoist tasks in sync",
    version="1.0.0",
    lifespan=lifespan,
)

if settings.auth_enabled:
    if not settings.admin_token:
        raise RuntimeError("AUTH_ENABLED=true requires ADMIN_TOKEN to be set")
    app.add_middleware(BearerTokenMiddleware, token=settings.admin_token, allow_paths=set(PUBLIC_PATHS))

app.include_router(sync.router)


@app.get("/health")
async def health_check():
    """Liveness check; sync health lives under /api/sync/status."""
    return {"status": "healthy", "service": "TaskBridge"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "taskbridge.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )

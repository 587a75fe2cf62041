from contextlib import asynccontextmanager
from fastapi import FastAPI

from rostersync.api import config, sync
from rostersync.api.errors import register_exception_handlers
from rostersync.core.config import get_settings
from rostersync.core.database import async_session_maker, init_db
from rostersync.core.logging import setup_logging
from rostersync.services.scheduler import start_scheduler, stop_scheduler
from rostersync.services.sync import recover_interrupted_runs


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    settings = get_settings()
    # Startup
    setup_logging(settings.log_level)
    await init_db()
    await recover_interrupted_runs(async_session_maker)
    if settings.scheduler_enabled:
        start_scheduler()
    yield
    # Shutdown
    stop_scheduler()


# Create FastAPI application
app = FastAPI(
    title="Roster Sync",
    description="Synchronizes teams, players and seasons from a sports club registry",
    version=config.VERSION,
    lifespan=lifespan,
)

register_exception_handlers(app)

# Include routers
app.include_router(config.health_router)
app.include_router(config.router)
app.include_router(sync.router)

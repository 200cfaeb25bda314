import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from pydantic import BaseModel

from tracksync.auth import login, logout
from tracksync.config import settings
from tracksync.routers import health, shipments, sync, webhooks
from tracksync.services.sync import SyncOrchestrator
from tracksync.storage import database
from tracksync.tasks.scheduler import shutdown_scheduler, start_scheduler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class LoginRequest(BaseModel):
    secret: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting tracking sync service")
    database.init_db()
    app.state.orchestrator = SyncOrchestrator()
    if settings.scheduler_enabled:
        start_scheduler(app.state.orchestrator)
    yield
    # Shutdown
    shutdown_scheduler()
    logger.info("Tracking sync service shutdown")


app = FastAPI(title="Tracking Sync", lifespan=lifespan)

# Include routers
app.include_router(health.router)
app.include_router(sync.router, prefix="/sync")
app.include_router(shipments.router, prefix="/shipments")
app.include_router(webhooks.router, prefix="/webhooks")


@app.post("/login")
async def login_action(payload: LoginRequest):
    """Exchange the admin secret for a session cookie."""
    return login(payload.secret)


@app.post("/logout")
async def logout_action():
    return logout()

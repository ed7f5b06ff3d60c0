from contextlib import asynccontextmanager
from typing import Optional
import logging
import os

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from fastapi.responses import FileResponse
from pydantic import BaseModel

from config import (
    get_settings,
    save_settings,
    clear_settings_cache,
    get_log_level_from_env,
    set_log_level,
    ProbeSettings,
)
from database import init_db
from events import get_event_bus
from hls_probe import StreamValidationProbe
from log_utils import configure_logging
from media_server_client import close_client, get_client, JellyfinClient
from run_scheduler import RunScheduler, get_scheduler, set_scheduler
from run_store import RunStore
from test_queue import TestQueue
from test_run_manager import TestRunManager, get_manager, set_manager
from routers import devices, libraries, live_events, schedules, test_runs

logger = logging.getLogger(__name__)


def build_engine(settings: ProbeSettings) -> TestRunManager:
    """Wire the probe, queue and run manager against the configured media server."""
    bus = get_event_bus()
    client = get_client()
    probe = StreamValidationProbe(client, events=bus)
    queue = TestQueue(
        probe,
        events=bus,
        parallelism=settings.max_parallel_tests,
        test_duration=settings.test_duration,
        spread_start_over_ms=settings.spread_start_over_ms,
    )
    return TestRunManager(RunStore(), queue, client, events=bus, settings=settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(get_log_level_from_env() if "LOG_LEVEL" in os.environ else settings.backend_log_level)
    init_db()

    manager = build_engine(settings)
    set_manager(manager)
    scheduler = RunScheduler(manager.store, manager, events=get_event_bus(), settings=settings)
    set_scheduler(scheduler)
    await scheduler.start()
    logger.info("JellyProbe started (configured: %s)", settings.is_configured())

    yield

    await scheduler.stop()
    await manager.queue.cancel()
    await close_client()
    set_scheduler(None)
    set_manager(None)
    logger.info("JellyProbe stopped")


app = FastAPI(
    title="JellyProbe",
    description="Transcoding test orchestrator for Jellyfin",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(test_runs.router)
app.include_router(test_runs.queue_router)
app.include_router(schedules.router)
app.include_router(devices.router)
app.include_router(libraries.router)
app.include_router(live_events.router)


# Health check
@app.get("/api/health")
async def health_check():
    manager = get_manager()
    scheduler = get_scheduler()
    return {
        "status": "healthy",
        "service": "jellyprobe",
        "configured": get_settings().is_configured(),
        "queue": manager.queue.get_status() if manager else None,
        "scheduler_running": scheduler.is_running if scheduler else False,
    }


# Settings
class SettingsRequest(BaseModel):
    jellyfin_url: str
    api_key: Optional[str] = None  # Optional - keep the stored key when omitted
    test_duration: int = 30
    max_parallel_tests: int = 1
    spread_start_over_ms: int = 0
    schedule_timezone: str = "UTC"
    backend_log_level: str = "INFO"


class TestConnectionRequest(BaseModel):
    jellyfin_url: str
    api_key: str


@app.get("/api/settings")
async def get_current_settings():
    """Get current settings (API key masked)."""
    settings = get_settings()
    data = settings.model_dump()
    data["api_key"] = "********" if settings.api_key else ""
    data["configured"] = settings.is_configured()
    return data


@app.post("/api/settings")
async def update_settings(request: SettingsRequest):
    """Update media server connection and probe settings."""
    manager = get_manager()
    if manager is not None and manager.is_busy():
        raise HTTPException(status_code=409, detail="Cannot change settings while a test run is active")

    current = get_settings()
    new_settings = current.model_copy(update={
        **request.model_dump(exclude={"api_key"}),
        "api_key": request.api_key or current.api_key,
    })
    save_settings(new_settings)
    clear_settings_cache()
    set_log_level(new_settings.backend_log_level)

    await close_client()

    if manager is not None:
        new_manager = build_engine(get_settings())
        set_manager(new_manager)
        scheduler = get_scheduler()
        if scheduler is not None:
            scheduler.manager = new_manager
            scheduler.settings = get_settings()
    return {"status": "saved", "configured": new_settings.is_configured()}


@app.post("/api/settings/test")
async def test_connection(request: TestConnectionRequest):
    """Test connection to the media server with provided credentials."""
    client = JellyfinClient(ProbeSettings(jellyfin_url=request.jellyfin_url, api_key=request.api_key))
    try:
        return await client.test_connection()
    finally:
        await client.close()


# Serve static files in production
static_dir = os.path.join(os.path.dirname(__file__), "static")
if os.path.exists(static_dir):
    app.mount(
        "/assets", StaticFiles(directory=os.path.join(static_dir, "assets")), name="assets"
    )

    @app.get("/{full_path:path}")
    async def serve_spa(full_path: str):
        # Serve index.html for all non-API routes (SPA routing)
        index_path = os.path.join(static_dir, "index.html")
        if os.path.exists(index_path):
            return FileResponse(index_path)
        return {"error": "Frontend not built"}

"""
ShipSync ShipStation Export
Main FastAPI application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from shipsync.config import get_settings
from shipsync.utils.logger import log
from shipsync import __version__

from shipsync.api import health, sync

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    # Credential file from env vars (for Render / PaaS)
    from shipsync.utils.credentials import bootstrap_credentials
    bootstrap_credentials()

    try:
        from shipsync.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    # Scheduled exports and backfill continuations
    from shipsync.scheduler import start_scheduler, stop_scheduler
    try:
        start_scheduler()
    except Exception as e:
        log.error(f"Scheduler startup error: {str(e)}")

    yield

    stop_scheduler()
    log.info("Shutting down application")


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Scheduled ShipStation shipment export into Google Sheets.

    - Incremental export of recent shipments and fulfillments
    - Resumable, time-boxed backfills over a date range
    - Client, billing cost and carton size enrichment from reference tabs
    """,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["health"])
app.include_router(sync.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "shipsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )

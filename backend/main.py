import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from config import LOG_LEVEL
from api_db_lifecycle import router as db_lifecycle_router
from db_lifecycle import MonitorConfig, build_default_monitor

# Configure logging
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("db_lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Start the monitoring loop when ENABLE_DB_MONITORING is set.

    Configuration errors abort startup. On shutdown the loop stops scheduling
    ticks and the tick in progress, if any, finishes first.
    """
    config = MonitorConfig.from_env()
    monitor = None
    if config.enabled:
        monitor = build_default_monitor(config=config)
        app.state.db_monitor = monitor
        monitor.start()
    else:
        logger.info("[DbMonitor] ENABLE_DB_MONITORING is off; loop not started")

    yield  # App runs here

    if monitor is not None:
        await monitor.stop()


app = FastAPI(
    title="Database Lifecycle Monitor",
    description="Health checks, backups and audit history for the application database.",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(db_lifecycle_router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "db-lifecycle"}

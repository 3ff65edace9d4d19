"""Main FastAPI application."""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from . import __version__
from .api import jobs_router
from .core.config import settings
from .core.logging_config import setup_logging
from .database import DATABASE_URL, get_db, init_db
from .exceptions import LongformError
from .middleware.exception_handler import longform_exception_handler
from .services.circuit_breaker import breaker_states
from .services.job_service import JobService

# Setup logging first
setup_logging(log_level=settings.log_level, log_format=settings.log_format)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup."""
    logger.info("Environment: %s", settings.environment.value)
    init_db()
    yield


app = FastAPI(
    title="Longform API",
    description=(
        "Plans, runs and resumes long document jobs that are too large for a "
        "single generation call: long-form writing, rewriting, and quote, "
        "position, argument and signal-density extraction."
    ),
    version=__version__,
    lifespan=lifespan,
)

# Handles are per process; runs started here live on worker threads.
app.state.job_service = JobService()

app.add_exception_handler(LongformError, longform_exception_handler)

db_type = "SQLite" if DATABASE_URL.startswith("sqlite") else DATABASE_URL.split(":", 1)[0]
logger.info(
    "Longform API started | env=%s | db=%s | provider=%s",
    settings.environment.value,
    db_type,
    settings.default_provider,
)

app.include_router(jobs_router)


_startup_time = time.monotonic()


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Health check returning database status, provider circuits and uptime.

    Never raises; a database failure is reported as degraded.
    """
    db_status = "ok"
    try:
        db.execute(text("SELECT 1"))
    except Exception:
        db_status = "error"

    return {
        "status": "healthy" if db_status == "ok" else "degraded",
        "db": db_status,
        "providers": breaker_states(),
        "uptime_seconds": round(time.monotonic() - _startup_time),
        "version": __version__,
    }

"""
Kinsync - Two-way sync of people and life-moments between two applications
FastAPI Application Entry Point

Run with:

    uvicorn api.main:app --host 0.0.0.0 --port 8000

Scheduled pulls are run out of process by scripts/run_sync.py.
"""
# Load environment variables from .env file first, before any imports
from dotenv import load_dotenv
load_dotenv()

import logging
import sqlite3
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from api.routes import people, sync, sync_peer
from api.services.sync_errors import SyncError
from config.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    # Startup: local edits of linked people must reach the outbox
    from api.services.outbox import install_outbox_recorder
    install_outbox_recorder()
    logger.info(f"Kinsync started as '{settings.app_name}' (peer prefix {settings.sync_path_prefix})")

    yield  # Application runs here

    logger.info("Kinsync stopped")


app = FastAPI(
    title="Kinsync",
    description="Pairing, replication and identity mapping of people and moments between two apps",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(sync.router)
app.include_router(sync_peer.router)
app.include_router(people.router)


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    """Map the sync error taxonomy onto HTTP status codes."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert validation errors to 400 with clear messages."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (convert bytes to string)
    sanitized_errors = []
    for error in errors:
        sanitized = dict(error)
        if "input" in sanitized and isinstance(sanitized["input"], bytes):
            sanitized["input"] = sanitized["input"].decode("utf-8", errors="replace")
        sanitized.pop("ctx", None)
        sanitized_errors.append(sanitized)

    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "detail": sanitized_errors}
    )


@app.get("/health")
async def health_check():
    """Health check endpoint that verifies critical dependencies."""
    from api.utils.db_paths import get_sync_db_path

    checks = {
        "database": True,
        "pairing_configured": settings.pairing_enabled,
    }
    try:
        conn = sqlite3.connect(str(get_sync_db_path()), timeout=5.0)
        conn.execute("SELECT 1")
        conn.close()
    except sqlite3.Error as e:
        logger.warning(f"Health check: database unavailable: {e}")
        checks["database"] = False

    return {
        "status": "healthy" if checks["database"] else "degraded",
        "service": "kinsync",
        "checks": checks,
    }

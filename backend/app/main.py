"""
Forum Engine Backend Application.

FastAPI application serving the discussion forum: boards, topics,
polls, read tracking, moderation and presence.
"""

import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from loguru import logger
from sqlalchemy.exc import InterfaceError, OperationalError

from app.api.v1 import router as api_v1_router
from app.core.config import settings
from app.core.database import close_db, database, init_db
from app.modules.forum.exceptions import ForumError
from app.modules.forum.maintenance import run_reconciliation
from app.modules.forum.presence import PresenceTracker, track_activity

logger.remove()
logger.add(sys.stderr, level=settings.log_level.upper())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    logger.info("Starting Forum Engine...")

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    # Repair counters and last-message pointers
    if settings.forum_reconcile_on_startup:
        await run_reconciliation(database)

    # Start presence tracking
    presence: PresenceTracker | None = None
    if settings.presence_enabled:
        presence = PresenceTracker(database)
        await presence.start()
    app.state.presence = presence

    logger.info("Forum Engine started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Forum Engine...")

    if presence is not None:
        await presence.stop()
    app.state.presence = None

    # Close database
    await close_db()

    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    Forum Engine

    ## Features

    - **Boards & Topics**: Paginated discussions with sticky and locked topics
    - **Polls**: Single or multiple choice, hidden results, vote changes
    - **Unread Tracking**: Per-topic and global read markers
    - **Moderation**: Reports, lock, move, staff notifications
    - **Presence**: Who is online

    ## Documentation

    - [API Docs](/docs) - Interactive Swagger UI
    - [ReDoc](/redoc) - Alternative documentation
    """,
    openapi_url=f"{settings.api_v1_prefix}/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)
app.state.presence = None


# ==================== Error Handlers ====================


@app.exception_handler(ForumError)
async def forum_error_handler(request: Request, exc: ForumError) -> ORJSONResponse:
    return ORJSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> ORJSONResponse:
    errors = [
        {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
        for error in exc.errors()
    ]
    return ORJSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request", "errors": errors},
    )


@app.exception_handler(OperationalError)
@app.exception_handler(InterfaceError)
async def database_unavailable_handler(request: Request, exc: Exception) -> ORJSONResponse:
    logger.error(f"Database unavailable on {request.method} {request.url.path}: {exc}")
    return ORJSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Database temporarily unavailable"},
    )


# ==================== Middleware ====================

# Activity tracking (no-op until the lifespan sets app.state.presence)
app.middleware("http")(track_activity)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_v1_router, prefix=settings.api_v1_prefix)


@app.get("/health", tags=["System"])
async def health_check() -> dict:
    """Health check endpoint for monitoring."""
    database_ok = await database.health_check()
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": database_ok,
        "version": settings.app_version,
    }


@app.get("/", tags=["System"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "api": settings.api_v1_prefix,
    }

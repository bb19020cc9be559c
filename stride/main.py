"""
FastAPI application entry point for the Stride notification service.

This module initializes the FastAPI application with:
- Application state (realtime hub, push clients, recipient cache)
- Exception handlers for consistent error responses
- Logging configuration

Environment Variables:
    STRIDE_ENV: Environment (production/development, default: development)
    STRIDE_LOG_LEVEL: Log level (DEBUG/INFO/WARNING/ERROR/CRITICAL, default: INFO)
    STRIDE_DB_URL: Database URL (default: sqlite:///./stride.db)
"""

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from stride import __version__
from stride.config.settings import get_settings
from stride.realtime.hub import RealtimeHub
from stride.services.push_gateway import ExpoPushClient, WebPushSender
from stride.utils.cache import TTLCache
from stride.utils.logging_config import get_logger, init_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Startup creates the long-lived collaborators shared by every request;
    shutdown closes the push client and drops realtime subscriptions.
    """
    logger = get_logger("api")
    logger.info("Starting Stride notification service")

    settings = get_settings()
    app.state.realtime_hub = RealtimeHub()
    app.state.push_client = ExpoPushClient()
    app.state.web_push = WebPushSender()
    app.state.recipient_cache = TTLCache(
        max_size=256,
        ttl_seconds=settings.recipient_cache_ttl_seconds,
    )
    if not settings.vapid_configured:
        logger.warning("VAPID keys not configured, browser push is disabled")

    logger.info("Stride notification service started")

    yield

    logger.info("Shutting down Stride notification service")
    await app.state.push_client.close()
    await app.state.realtime_hub.close()


# Initialize logging before creating app
init_logging()

app = FastAPI(
    title="Stride Notification API",
    description="Notification delivery (push, in-app inbox, realtime) "
                "and realtime channels for Stride Campus.",
    version=__version__,
    lifespan=lifespan,
)


# Exception handlers


@app.exception_handler(ValidationError)
async def validation_exception_handler(
    request: Request, exc: ValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors raised outside request parsing."""
    logger = get_logger("api")
    logger.warning(
        "Validation error",
        extra={
            "path": request.url.path,
            "method": request.method,
            "errors": exc.errors(),
        }
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation Error",
            "message": "Request validation failed",
            "details": exc.errors(include_url=False, include_context=False),
        }
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(
    request: Request, exc: SQLAlchemyError
) -> JSONResponse:
    """Handle SQLAlchemy database errors."""
    logger = get_logger("db")
    logger.error(
        "Database error",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error": str(exc),
        }
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Database Error",
            "message": "An error occurred while accessing the database. "
                       "Please try again later.",
        }
    )


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """Handle all other unhandled exceptions."""
    logger = get_logger("api")
    logger.error(
        "Unhandled exception",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error": str(exc),
        },
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred. Please try again later.",
        }
    )


@app.get("/health", tags=["Health"])
async def health_check(request: Request) -> Dict[str, Any]:
    """Health check endpoint."""
    hub: RealtimeHub = request.app.state.realtime_hub
    return {
        "status": "healthy",
        "service": "stride-notifications",
        "version": __version__,
        "realtime_subscribers": hub.subscriber_count(),
    }


# API routers
from stride.api import notifications, push_notifications, push_tokens, realtime  # noqa: E402

app.include_router(push_notifications.router, prefix="/api")
app.include_router(push_tokens.router, prefix="/api")
app.include_router(notifications.router, prefix="/api")
app.include_router(realtime.router)

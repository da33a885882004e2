"""ASGI entry point for the Termdeck server.

Builds the session registry at startup, serves the session API and the
``/terminal/{session_id}`` WebSocket, and closes every session on
shutdown.

Usage:
    uv run uvicorn main:app --port 3080
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from activity import ActivityClassifier
from api.routes import router
from api.websocket import websocket_router
from config import settings
from session_registry import SessionRegistry, close_all_with_watchdog
from terminal.lifecycle import SessionLifecycle


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Own the session registry for the lifetime of the server.

    Builds the session registry on startup. On shutdown (uvicorn runs this
    on SIGINT and SIGTERM) every session is closed; if that takes longer
    than the graceful timeout plus the watchdog grace, the process exits
    with status 1.

    Args:
        app: The application; the registry is stored on ``app.state``.

    Yields:
        None while the server is running.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_host=settings.backend_host,
        backend_port=settings.backend_port,
        terminal_command=settings.terminal_command,
        max_sessions=settings.max_concurrent_sessions,
        log_level=settings.log_level,
    )

    classifier = ActivityClassifier(
        debounce_seconds=settings.activity_debounce_ms / 1000,
        buffer_chars=settings.activity_buffer_chars,
        window_lines=settings.activity_window_lines,
    )
    lifecycle = SessionLifecycle.from_settings(settings)
    registry = SessionRegistry(
        lifecycle,
        classifier,
        max_sessions=settings.max_concurrent_sessions,
        subscriber_queue_size=settings.subscriber_queue_size,
    )

    # Store on app.state for routes and WebSocket handlers
    app.state.session_registry = registry

    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down", active_sessions=registry.active_count)
    await close_all_with_watchdog(registry, settings.shutdown_deadline)
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Termdeck",
    description="Supervise interactive terminal sessions and stream them "
    "live to remote viewers over WebSocket.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Browser viewers may be served from another origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Session API and terminal WebSocket
app.include_router(router, tags=["sessions"])
app.include_router(websocket_router, tags=["terminal"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation.

    Returns:
        Links to the API docs and the health check.
    """
    return {
        "message": "Termdeck API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        log_level=settings.log_level.lower(),
    )

"""HTTP API routes for the Termdeck backend.

This module defines the HTTP endpoints for session management, server
shutdown and health checks. Terminal streaming is handled via WebSocket
in websocket.py.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException, Path, Request, status

from models.schemas import (
    CloseSessionResponse,
    CreateSessionRequest,
    CreateSessionResponse,
    HealthResponse,
    SessionResponse,
    ShutdownResponse,
)
from session_registry import SessionRegistry
from terminal.errors import (
    CapacityExceededError,
    InvalidTargetError,
    ProcessSpawnError,
    SessionNotFoundError,
)

logger = structlog.get_logger(__name__)

router = APIRouter()

# Delay before the server signals itself, so the shutdown response is sent.
SHUTDOWN_SIGNAL_DELAY_SECONDS = 0.3

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def get_session_registry(request: Request) -> SessionRegistry:
    """Get the registry stored on the application during startup.

    Returns:
        The application's SessionRegistry instance.

    Raises:
        RuntimeError: If the registry has not been configured.
    """
    registry = getattr(request.app.state, "session_registry", None)
    if registry is None:
        logger.error("session_registry_not_configured")
        raise RuntimeError(
            "SessionRegistry not configured. Set app.state.session_registry during startup."
        )
    return registry


RegistryDep = Annotated[SessionRegistry, Depends(get_session_registry)]


def schedule_shutdown_signal(delay: float = SHUTDOWN_SIGNAL_DELAY_SECONDS) -> None:
    """Send SIGTERM to this process after ``delay`` seconds.

    Uvicorn handles the signal by running the application's lifespan
    shutdown, which closes every session.
    """
    loop = asyncio.get_running_loop()
    loop.call_later(delay, os.kill, os.getpid(), signal.SIGTERM)


# -----------------------------------------------------------------------------
# Sessions
# -----------------------------------------------------------------------------


@router.post(
    "/api/sessions",
    response_model=CreateSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new session",
    description="Start the configured command in a new terminal session.",
)
async def create_session(
    request: CreateSessionRequest, registry: RegistryDep
) -> CreateSessionResponse:
    """Create a new session and start its process.

    Args:
        request: The session creation request containing the working directory.
        registry: The application's session registry.

    Returns:
        CreateSessionResponse with the session summary and websocket_url.

    Raises:
        HTTPException: 400 for an unusable directory, 429 at capacity,
            500 if the process could not be started.
    """
    try:
        summary = await registry.create(request.cwd)
    except InvalidTargetError as e:
        logger.warning("session_creation_rejected", cwd=request.cwd, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e
    except CapacityExceededError as e:
        logger.warning("session_creation_at_capacity", max_sessions=e.max_sessions)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(e),
        ) from e
    except ProcessSpawnError as e:
        logger.error("session_creation_failed", cwd=request.cwd, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to create session: {e}",
        ) from e

    logger.info("session_created", session_id=summary.id, cwd=summary.cwd)

    base = SessionResponse.from_summary(summary)
    return CreateSessionResponse(
        **base.model_dump(),
        websocket_url=f"/terminal/{summary.id}",
    )


@router.get(
    "/api/sessions",
    response_model=list[SessionResponse],
    summary="List sessions",
    description="List all sessions in creation order.",
)
async def list_sessions(registry: RegistryDep) -> list[SessionResponse]:
    return [SessionResponse.from_summary(summary) for summary in registry.list()]


@router.get(
    "/api/sessions/{session_id}",
    response_model=SessionResponse,
    summary="Get session details",
    description="Get the current state of one session.",
)
async def get_session(
    session_id: Annotated[str, Path(description="The session ID")],
    registry: RegistryDep,
) -> SessionResponse:
    """Get the current state of a session.

    Raises:
        HTTPException: If session is not found.
    """
    try:
        summary = registry.summary(session_id)
    except SessionNotFoundError as e:
        logger.warning("session_not_found", session_id=session_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        ) from e

    logger.debug("session_retrieved", session_id=session_id)
    return SessionResponse.from_summary(summary)


@router.delete(
    "/api/sessions/{session_id}",
    response_model=CloseSessionResponse,
    status_code=status.HTTP_200_OK,
    summary="Close a session",
    description=(
        "Terminate the session process (SIGTERM, then SIGKILL after the "
        "graceful timeout) and remove the session."
    ),
)
async def close_session(
    session_id: Annotated[str, Path(description="The session ID")],
    registry: RegistryDep,
) -> CloseSessionResponse:
    """Close a session.

    Raises:
        HTTPException: If session is not found.
    """
    try:
        outcome = await registry.close(session_id)
    except SessionNotFoundError as e:
        logger.warning("close_session_not_found", session_id=session_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        ) from e

    logger.info("session_closed", session_id=session_id, outcome=outcome.value)
    return CloseSessionResponse(success=True, outcome=outcome)


# -----------------------------------------------------------------------------
# Server
# -----------------------------------------------------------------------------


@router.post(
    "/api/server/shutdown",
    response_model=ShutdownResponse,
    summary="Shut down the server",
    description="Close every session and stop the server.",
)
async def shutdown_server(registry: RegistryDep) -> ShutdownResponse:
    logger.info("shutdown_requested", active_sessions=registry.active_count)
    schedule_shutdown_signal()
    return ShutdownResponse(success=True, message="Server shutting down")


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with session capacity.",
)
async def health_check(request: Request) -> HealthResponse:
    """Health check endpoint with session capacity.

    Returns:
        HealthResponse with status, timestamp and session counts. The
        status is "unhealthy" until the registry is configured.
    """
    try:
        registry = get_session_registry(request)
    except RuntimeError:
        # Registry not configured yet (e.g., during startup)
        return HealthResponse(status="unhealthy", timestamp=time.time())

    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        active_sessions=registry.active_count,
        max_sessions=registry.max_sessions,
    )

"""Pydantic schemas for API request/response models.

This module defines the data models used by the HTTP control surface.
WebSocket frames live in ``events.types``.
All models use Pydantic v2 with strict type validation.
"""

from typing import Literal

from pydantic import BaseModel, Field

from terminal.lifecycle import TerminationOutcome
from terminal.session import SessionState, SessionSummary


class CreateSessionRequest(BaseModel):
    """Request body for creating a new session."""

    cwd: str = Field(
        min_length=1,
        max_length=4096,
        description="Working directory for the session process",
        examples=["/home/me/projects/webapp"],
    )


class SessionResponse(BaseModel):
    """Summary information for a session."""

    id: str = Field(
        description="Unique session identifier",
        examples=["3f1c2b9e-7d4a-4e0b-9a51-2f8d6c0e1a77"],
    )
    cwd: str = Field(description="Working directory of the session process")
    status: SessionState = Field(description="Current session status")
    created_at: str = Field(description="ISO-8601 UTC timestamp of creation")
    waiting: bool = Field(
        default=False,
        description="True if the session appears to be waiting for input",
    )
    exit_code: int | None = Field(
        default=None,
        description="Process exit code once exited (negative for signals)",
    )

    @classmethod
    def from_summary(cls, summary: SessionSummary) -> "SessionResponse":
        return cls(
            id=summary.id,
            cwd=summary.cwd,
            status=summary.status,
            created_at=summary.created_at,
            waiting=summary.waiting,
            exit_code=summary.exit_code,
        )


class CreateSessionResponse(SessionResponse):
    """Response for session creation."""

    websocket_url: str = Field(
        description="WebSocket path for streaming the session terminal",
        examples=["/terminal/3f1c2b9e-7d4a-4e0b-9a51-2f8d6c0e1a77"],
    )


class CloseSessionResponse(BaseModel):
    """Response for closing a session."""

    success: bool = Field(description="True once the session was removed")
    outcome: TerminationOutcome = Field(
        description="How the process termination settled",
    )


class ShutdownResponse(BaseModel):
    """Response for a server shutdown request."""

    success: bool
    message: str


class HealthResponse(BaseModel):
    """Health check response with session capacity."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    active_sessions: int = Field(
        default=0,
        description="Number of sessions whose process is running",
    )
    max_sessions: int = Field(
        default=0,
        description="Maximum number of concurrently active sessions",
    )

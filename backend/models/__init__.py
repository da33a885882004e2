"""Models module for Pydantic schemas.

This module exposes all request/response models used by the API.
"""

from models.schemas import (
    CloseSessionResponse,
    CreateSessionRequest,
    CreateSessionResponse,
    HealthResponse,
    SessionResponse,
    ShutdownResponse,
)

__all__ = [
    "CloseSessionResponse",
    "CreateSessionRequest",
    "CreateSessionResponse",
    "HealthResponse",
    "SessionResponse",
    "ShutdownResponse",
]

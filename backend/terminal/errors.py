"""Error taxonomy for terminal session management.

Each error maps to a distinct response at the HTTP control surface and
the streaming endpoint, so callers can tell "too many sessions" apart
from "no such session" without string matching.
"""


class TerminalError(Exception):
    """Base class for all terminal session errors."""


class CapacityExceededError(TerminalError):
    """Raised when create() is attempted at the concurrency cap."""

    def __init__(self, max_sessions: int) -> None:
        super().__init__(f"Maximum sessions limit reached ({max_sessions})")
        self.max_sessions = max_sessions


class SessionNotFoundError(TerminalError):
    """Raised when an operation references an id absent from the registry."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class InvalidTargetError(TerminalError):
    """Raised when the requested working directory is unusable."""


class ProcessSpawnError(TerminalError):
    """Raised when the OS refuses to start the session process."""


class SessionExitedError(TerminalError):
    """Raised when writing to or resizing a process that has already exited."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} has exited")
        self.session_id = session_id

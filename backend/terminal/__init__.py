"""Terminal session processes.

This package owns the processes behind terminal sessions: the session
record, working-directory validation, the error taxonomy and the
lifecycle that spawns, drives and terminates pty-backed processes.

Key Components:
    - TerminalSession / SessionSummary: Session record and snapshot
    - SessionLifecycle: Spawn, write, resize and two-phase terminate
    - TerminationOutcome: How a termination settled
    - validate_working_directory: Reject unusable directories before spawn
"""

from terminal.errors import (
    CapacityExceededError,
    InvalidTargetError,
    ProcessSpawnError,
    SessionExitedError,
    SessionNotFoundError,
    TerminalError,
)
from terminal.lifecycle import SessionLifecycle, TerminationOutcome
from terminal.session import SessionState, SessionSummary, TerminalSession
from terminal.validation import validate_working_directory

__all__ = [
    # Errors
    "TerminalError",
    "CapacityExceededError",
    "SessionNotFoundError",
    "InvalidTargetError",
    "ProcessSpawnError",
    "SessionExitedError",
    # Sessions
    "SessionState",
    "TerminalSession",
    "SessionSummary",
    # Lifecycle
    "SessionLifecycle",
    "TerminationOutcome",
    "validate_working_directory",
]

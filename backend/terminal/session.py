"""Session record and summary types.

A TerminalSession is the registry's view of one supervised process: its
identity, working directory, lifecycle state and output channel. The
process handle itself is deliberately absent; SessionLifecycle keeps it.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from events.bus import SessionChannel


class SessionState(StrEnum):
    """Session lifecycle state."""

    ACTIVE = "active"
    EXITED = "exited"


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class TerminalSession:
    """Metadata and state for one terminal session.

    Attributes:
        session_id: Unique identifier (a UUID4 string).
        cwd: Absolute working directory of the process.
        channel: Fan-out channel for this session's output and exit frames.
        created_at: ISO-8601 UTC timestamp of creation.
        state: ACTIVE until the process exits. Written only by SessionLifecycle.
        exit_code: Process exit code once exited. Negative for signal deaths.
    """

    session_id: str
    cwd: str
    channel: SessionChannel
    created_at: str = field(default_factory=_utc_now_iso)
    state: SessionState = SessionState.ACTIVE
    exit_code: int | None = None

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE


@dataclass(frozen=True)
class SessionSummary:
    """Point-in-time snapshot of a session for listing."""

    id: str
    cwd: str
    status: SessionState
    created_at: str
    waiting: bool = False
    exit_code: int | None = None

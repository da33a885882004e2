"""Session registry for supervised terminal sessions.

This module provides the SessionRegistry class: the in-memory table of
live sessions, keyed by id, with a hard cap on how many may run at once.

The SessionRegistry coordinates between:
- SessionLifecycle: Spawns and terminates the process behind each session
- SessionChannel: Fans each session's output out to its viewers
- ActivityClassifier: Tracks whether each session is waiting for input

Usage:
    >>> from activity import ActivityClassifier
    >>> from session_registry import SessionRegistry
    >>> from terminal import SessionLifecycle
    >>>
    >>> lifecycle = SessionLifecycle("claude")
    >>> registry = SessionRegistry(lifecycle, ActivityClassifier())
    >>>
    >>> # Create a session
    >>> summary = await registry.create("/home/me/project")
    >>> print(summary.id, summary.status)
    >>>
    >>> # Close it (SIGTERM, then SIGKILL after the timeout)
    >>> outcome = await registry.close(summary.id)
    >>>
    >>> # Shutdown
    >>> await registry.close_all()
"""

import asyncio
import os
import uuid
from collections.abc import Callable

import structlog

from activity import ActivityClassifier
from events.bus import (
    CLOSE_GOING_AWAY,
    CLOSE_NORMAL,
    SessionChannel,
    Subscription,
)
from terminal.errors import (
    CapacityExceededError,
    SessionExitedError,
    SessionNotFoundError,
)
from terminal.lifecycle import SessionLifecycle, TerminationOutcome
from terminal.session import SessionSummary, TerminalSession
from terminal.validation import validate_working_directory

logger = structlog.get_logger(__name__)


class SessionRegistry:
    """In-memory table of terminal sessions with a concurrency cap.

    The registry is the only component that adds or removes sessions. It
    never touches a process directly: spawning, input, resizing and
    termination all go through SessionLifecycle.

    Thread Safety:
        Capacity checks and slot reservation happen under an asyncio.Lock.
        A spawn in progress holds a reserved slot, so concurrent create()
        calls cannot jointly exceed ``max_sessions``.

    Attributes:
        lifecycle: Owner of every session process.
        classifier: Optional waiting-for-input classifier fed with output.
        max_sessions: Maximum number of active sessions.
        subscriber_queue_size: Per-viewer buffer bound for new channels.
    """

    def __init__(
        self,
        lifecycle: SessionLifecycle,
        classifier: ActivityClassifier | None = None,
        *,
        max_sessions: int = 5,
        subscriber_queue_size: int = 1000,
    ) -> None:
        """Initialize the SessionRegistry.

        Args:
            lifecycle: Lifecycle used to spawn and terminate processes.
            classifier: Optional activity classifier tapped on output.
            max_sessions: Maximum number of concurrently active sessions.
            subscriber_queue_size: Per-viewer buffer bound.
        """
        self.lifecycle = lifecycle
        self.classifier = classifier
        self.max_sessions = max_sessions
        self.subscriber_queue_size = subscriber_queue_size
        self._sessions: dict[str, TerminalSession] = {}
        self._closing: dict[str, asyncio.Task[TerminationOutcome]] = {}
        self._pending_spawns = 0
        self._lock = asyncio.Lock()
        logger.info("session_registry_initialized", max_sessions=max_sessions)

    @property
    def active_count(self) -> int:
        """Number of sessions whose process is still running."""
        return sum(1 for session in self._sessions.values() if session.is_active)

    def _tap_output(self, session_id: str, text: str) -> None:
        if self.classifier is not None:
            self.classifier.feed(session_id, text)

    def _summarize(self, session: TerminalSession) -> SessionSummary:
        waiting = (
            self.classifier.is_waiting(session.session_id)
            if self.classifier is not None
            else False
        )
        return SessionSummary(
            id=session.session_id,
            cwd=session.cwd,
            status=session.state,
            created_at=session.created_at,
            waiting=waiting,
            exit_code=session.exit_code,
        )

    async def create(self, cwd: str) -> SessionSummary:
        """Create a session and start its process.

        Args:
            cwd: Working directory for the process.

        Returns:
            A summary of the new, active session.

        Raises:
            InvalidTargetError: If ``cwd`` is not a usable directory.
            CapacityExceededError: If ``max_sessions`` sessions are active.
            ProcessSpawnError: If the process could not be started.
        """
        resolved_cwd = validate_working_directory(cwd)

        async with self._lock:
            if self.active_count + self._pending_spawns >= self.max_sessions:
                logger.warning(
                    "create_session_capacity_exceeded",
                    active=self.active_count,
                    pending=self._pending_spawns,
                    max_sessions=self.max_sessions,
                )
                raise CapacityExceededError(self.max_sessions)
            self._pending_spawns += 1

        session_id = str(uuid.uuid4())
        session = TerminalSession(
            session_id=session_id,
            cwd=resolved_cwd,
            channel=SessionChannel(session_id, self.subscriber_queue_size),
        )
        logger.info("create_session_start", session_id=session_id, cwd=resolved_cwd)

        try:
            handle = await self.lifecycle.spawn(session, on_output=self._tap_output)
            # No await between spawn and insert, so the reserved slot
            # turns into a registered session atomically.
            self._sessions[session_id] = session
        finally:
            self._pending_spawns -= 1

        logger.info(
            "create_session_complete",
            session_id=session_id,
            pid=handle.pid,
            active_sessions=self.active_count,
        )
        return self._summarize(session)

    def get(self, session_id: str) -> TerminalSession:
        """Look up a session.

        Raises:
            SessionNotFoundError: If the id is not registered.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def summary(self, session_id: str) -> SessionSummary:
        return self._summarize(self.get(session_id))

    def list(self) -> list[SessionSummary]:
        """Snapshot of all sessions in creation order."""
        return [self._summarize(session) for session in list(self._sessions.values())]

    def subscribe(self, session_id: str) -> Subscription:
        """Subscribe to a session's output and exit frames.

        Use the returned Subscription as a context manager so it is always
        released.

        Raises:
            SessionNotFoundError: If the id is not registered.
        """
        return self.get(session_id).channel.subscribe()

    async def close(self, session_id: str) -> TerminationOutcome:
        """Terminate a session's process and remove the session.

        Concurrent calls for the same id share one termination: later
        callers wait for and return the first call's outcome. Once the
        session has been removed, close() raises SessionNotFoundError.

        Args:
            session_id: The session to close.

        Returns:
            How the termination settled.

        Raises:
            SessionNotFoundError: If the id is not registered.
        """
        task = self._closing.get(session_id)
        if task is None:
            if session_id not in self._sessions:
                raise SessionNotFoundError(session_id)
            task = asyncio.create_task(
                self._close_session(session_id), name=f"close_{session_id}"
            )
            self._closing[session_id] = task
        else:
            logger.debug("close_session_already_in_progress", session_id=session_id)

        # A cancelled caller must not abort a termination other callers share.
        return await asyncio.shield(task)

    async def _close_session(self, session_id: str) -> TerminationOutcome:
        session = self._sessions[session_id]
        logger.info(
            "close_session_start",
            session_id=session_id,
            state=session.state.value,
        )

        try:
            outcome = await self.lifecycle.terminate(session_id)
        finally:
            # The entry goes away whether or not termination succeeded.
            session.channel.close(CLOSE_NORMAL, "Session closed")
            self._sessions.pop(session_id, None)
            self._closing.pop(session_id, None)
            if self.classifier is not None:
                self.classifier.forget(session_id)

        logger.info(
            "close_session_complete",
            session_id=session_id,
            outcome=outcome.value,
            exit_code=session.exit_code,
        )
        return outcome

    async def close_all(self) -> None:
        """Close every session concurrently and wait for all of them.

        Viewers are disconnected first with close code 1001. Failures are
        logged per session and never stop the others from closing.
        """
        session_ids = list(self._sessions)
        logger.info("close_all_start", session_count=len(session_ids))

        for session_id in session_ids:
            self._sessions[session_id].channel.close(
                CLOSE_GOING_AWAY, "Server shutting down"
            )

        results = await asyncio.gather(
            *(self.close(session_id) for session_id in session_ids),
            return_exceptions=True,
        )
        for session_id, result in zip(session_ids, results, strict=True):
            if isinstance(result, SessionNotFoundError):
                continue
            if isinstance(result, BaseException):
                logger.error(
                    "close_all_session_failed",
                    session_id=session_id,
                    error=str(result),
                )

        logger.info("close_all_complete", remaining=len(self._sessions))

    def write(self, session_id: str, data: str) -> bool:
        """Forward user input to a session.

        Input also tells the classifier the user has answered, so the
        session stops showing as waiting.

        Returns:
            True if the input was written, False if it was dropped because
            the process has exited or is going away.

        Raises:
            SessionNotFoundError: If the id is not registered.
        """
        session = self.get(session_id)
        if self.classifier is not None:
            self.classifier.notify_input(session_id)

        if not session.is_active:
            logger.debug("write_dropped_session_exited", session_id=session_id)
            return False

        try:
            self.lifecycle.write(session_id, data)
        except (SessionExitedError, SessionNotFoundError):
            logger.debug("write_dropped_process_gone", session_id=session_id)
            return False
        except OSError as e:
            logger.warning("write_failed", session_id=session_id, error=str(e))
            return False
        return True

    def resize(self, session_id: str, cols: int, rows: int) -> bool:
        """Resize a session's terminal.

        Returns:
            True if applied, False if dropped because the process is gone.

        Raises:
            SessionNotFoundError: If the id is not registered.
        """
        session = self.get(session_id)
        if not session.is_active:
            logger.debug("resize_dropped_session_exited", session_id=session_id)
            return False

        try:
            self.lifecycle.resize(session_id, cols, rows)
        except (SessionExitedError, SessionNotFoundError):
            logger.debug("resize_dropped_process_gone", session_id=session_id)
            return False
        except OSError as e:
            logger.warning("resize_failed", session_id=session_id, error=str(e))
            return False
        return True


async def close_all_with_watchdog(
    registry: SessionRegistry,
    deadline_seconds: float,
    force_exit: Callable[[int], object] = os._exit,
) -> None:
    """Close every session, forcing the process to exit past a deadline.

    Args:
        registry: The registry to drain.
        deadline_seconds: Upper bound on how long shutdown may take.
        force_exit: Called with exit status 1 when the deadline passes.
    """
    try:
        await asyncio.wait_for(registry.close_all(), timeout=deadline_seconds)
    except TimeoutError:
        logger.error("forced_shutdown", deadline_seconds=deadline_seconds)
        force_exit(1)

"""Process lifecycle for terminal sessions.

This module owns every session process from spawn to reap:
- Spawning the configured command inside a pseudo-terminal
- Pumping output into the session channel (and the activity tap)
- Observing process exit
- Writing input and resizing the terminal
- Two-phase termination: SIGTERM, then SIGKILL after a timeout

Process handles never leave this module. The registry addresses
processes by session id only.
"""

import asyncio
import codecs
import contextlib
import functools
import os
import signal
import threading
from collections.abc import Callable, Mapping, Sequence
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog
from ptyprocess import PtyProcess

from events.bus import CLOSE_NORMAL
from events.types import ExitFrame, OutputFrame
from terminal.errors import (
    ProcessSpawnError,
    SessionExitedError,
    SessionNotFoundError,
)
from terminal.session import SessionState, TerminalSession

if TYPE_CHECKING:
    from config import Settings

logger = structlog.get_logger(__name__)

# Maximum bytes read from the pty master per readiness callback.
READ_CHUNK_SIZE = 65536

# After the process is reaped, how long to wait for the pty to report EOF
# so trailing output is published before the exit frame.
OUTPUT_DRAIN_SECONDS = 0.2

# After SIGKILL, how long terminate() waits for the exit watcher to reap.
# This window includes the output drain and stays below the default
# shutdown watchdog grace (1 s), so a forced close_all() settles before
# the watchdog fires.
FORCE_KILL_REAP_SECONDS = 0.5

OutputTap = Callable[[str, str], None]


class TerminationOutcome(StrEnum):
    """How a terminate() call settled."""

    GRACEFUL = "graceful"
    FORCED = "forced"
    ALREADY_EXITED = "already_exited"


class SupervisedPtyProcess(PtyProcess):
    """PtyProcess whose kill() never calls waitpid().

    The stock kill() checks isalive() first, which reaps the child. Only
    the exit watcher may reap, so signals go straight to os.kill().
    """

    def kill(self, sig: int) -> None:
        os.kill(self.pid, sig)


class PtyProcessHandle:
    """One running process: output pump, exit watcher, signals and input.

    The pump is a reader callback on the pty master fd. The exit watcher
    is a single task that awaits ``wait()`` on its own thread, then
    drains remaining output, records the exit code and fires ``on_exit``.

    Attributes:
        session_id: Session this process belongs to.
        pid: OS process id.
        exit_code: Exit code once the process has exited, else None.
    """

    def __init__(
        self,
        session_id: str,
        process: Any,
        on_output: Callable[[str], None],
        on_exit: Callable[[int], None],
    ) -> None:
        self.session_id = session_id
        self.pid: int = process.pid
        self.exit_code: int | None = None
        self._process = process
        self._fd: int = process.fd
        self._on_output = on_output
        self._on_exit = on_exit
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._reading = False
        self._eof = asyncio.Event()
        self._exited = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._watch_task: asyncio.Task[None] | None = None

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    def start(self) -> None:
        """Begin pumping output and watching for exit. Call on the event loop."""
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(self._fd, self._on_readable)
        self._reading = True
        self._watch_task = self._loop.create_task(
            self._watch_exit(), name=f"pty_exit_{self.session_id}"
        )

    def _on_readable(self) -> None:
        try:
            data = os.read(self._fd, READ_CHUNK_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # Linux raises EIO once the child side of the pty is closed.
            data = b""

        if not data:
            self._stop_reading()
            self._eof.set()
            return

        text = self._decoder.decode(data)
        if text:
            self._on_output(text)

    def _stop_reading(self) -> None:
        if self._reading and self._loop is not None:
            self._loop.remove_reader(self._fd)
            self._reading = False

    def _wait_for_exit(self) -> int:
        """Block until the process exits (runs on the exit thread)."""
        status = self._process.wait()
        if status is None:
            signum = getattr(self._process, "signalstatus", None)
            return -signum if signum else -1
        return status

    def _wait_on_exit_thread(self) -> "asyncio.Future[int]":
        """Run ``wait()`` on a dedicated daemon thread.

        Each process holds its thread until it exits. The loop's default
        executor is left to spawns and closes.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[int] = loop.create_future()

        def settle(code: int | None, error: Exception | None) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(code)

        def run() -> None:
            code: int | None = None
            error: Exception | None = None
            try:
                code = self._wait_for_exit()
            except Exception as e:
                error = e
            # The loop may already be closed if the server stopped first.
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(settle, code, error)

        threading.Thread(
            target=run, name=f"pty-exit-{self.pid}", daemon=True
        ).start()
        return future

    async def _watch_exit(self) -> None:
        try:
            code = await self._wait_on_exit_thread()
        except Exception as e:
            logger.error(
                "process_wait_failed",
                session_id=self.session_id,
                pid=self.pid,
                error=str(e),
            )
            code = -1

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._eof.wait(), timeout=OUTPUT_DRAIN_SECONDS)
        self._stop_reading()

        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._on_output(tail)

        self.exit_code = code
        self._exited.set()
        logger.info(
            "process_exited",
            session_id=self.session_id,
            pid=self.pid,
            exit_code=code,
        )
        self._on_exit(code)

        try:
            await asyncio.get_running_loop().run_in_executor(
                None, self._process.close
            )
        except Exception as e:
            logger.warning(
                "process_close_failed",
                session_id=self.session_id,
                error=str(e),
            )

    async def wait_exited(self) -> None:
        """Wait until the exit watcher has observed the process exit."""
        await self._exited.wait()

    def send_signal(self, sig: int) -> None:
        """Send a signal unless the process is already known to have exited."""
        if self.exited:
            return
        self._process.kill(sig)

    def write(self, data: bytes) -> None:
        if self.exited:
            raise SessionExitedError(self.session_id)
        self._process.write(data)

    def resize(self, cols: int, rows: int) -> None:
        if self.exited:
            raise SessionExitedError(self.session_id)
        self._process.setwinsize(rows, cols)


class SessionLifecycle:
    """Spawns, drives and terminates the processes behind terminal sessions.

    The lifecycle is the single owner of every process handle and the only
    writer of ``TerminalSession.state`` and ``exit_code``.

    Attributes:
        command: Executable to launch for each session.
        args: Arguments passed after the command.
        env: Environment overrides layered on top of os.environ.
        cols: Initial terminal width.
        rows: Initial terminal height.
        terminate_timeout: Seconds to wait after SIGTERM before SIGKILL.
        term_name: Value of TERM in the child environment.
    """

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        *,
        cols: int = 120,
        rows: int = 30,
        terminate_timeout: float = 5.0,
        term_name: str = "xterm-256color",
        process_factory: Callable[..., Any] | None = None,
    ) -> None:
        """Initialize the lifecycle.

        Args:
            command: Executable to launch for each session.
            args: Arguments passed after the command.
            env: Environment overrides layered on top of os.environ.
            cols: Initial terminal width in columns.
            rows: Initial terminal height in rows.
            terminate_timeout: Seconds between SIGTERM and SIGKILL.
            term_name: TERM value for the child.
            process_factory: Callable with the signature of
                ``PtyProcess.spawn(argv, cwd=, env=, dimensions=)``.
                Defaults to a pty-backed process.
        """
        self.command = command
        self.args = list(args)
        self.env = dict(env or {})
        self.cols = cols
        self.rows = rows
        self.terminate_timeout = terminate_timeout
        self.term_name = term_name
        self._process_factory = process_factory or SupervisedPtyProcess.spawn
        self._handles: dict[str, PtyProcessHandle] = {}
        logger.info(
            "session_lifecycle_initialized",
            command=command,
            args=self.args,
            cols=cols,
            rows=rows,
            terminate_timeout=terminate_timeout,
        )

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        process_factory: Callable[..., Any] | None = None,
    ) -> "SessionLifecycle":
        """Build a lifecycle from application settings."""
        return cls(
            settings.terminal_command,
            settings.terminal_args,
            settings.terminal_env,
            cols=settings.default_cols,
            rows=settings.default_rows,
            terminate_timeout=settings.graceful_shutdown_timeout,
            term_name=settings.terminal_name,
            process_factory=process_factory,
        )

    def _build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.env)
        env["TERM"] = self.term_name
        return env

    def _require(self, session_id: str) -> PtyProcessHandle:
        handle = self._handles.get(session_id)
        if handle is None:
            raise SessionNotFoundError(session_id)
        return handle

    async def spawn(
        self,
        session: TerminalSession,
        on_output: OutputTap | None = None,
    ) -> PtyProcessHandle:
        """Start the process for a session.

        The blocking fork/exec runs in the default executor. If the caller is
        cancelled while it runs, the late process is killed and reaped.
        Once started, every decoded output chunk is published to
        ``session.channel`` and passed to ``on_output(session_id, text)``.
        When the process exits, the session is marked exited, an exit frame
        is published and the channel is closed.

        Args:
            session: The session record to start a process for.
            on_output: Optional tap called with every output chunk.

        Returns:
            The handle, which stays owned by this lifecycle. Callers may read
            its ``pid`` but must not signal or write through it.

        Raises:
            ProcessSpawnError: If the process could not be started.
        """
        argv = [self.command, *self.args]
        logger.info(
            "process_spawning",
            session_id=session.session_id,
            argv=argv,
            cwd=session.cwd,
        )

        loop = asyncio.get_running_loop()
        spawn_future = loop.run_in_executor(
            None,
            functools.partial(
                self._process_factory,
                argv,
                cwd=session.cwd,
                env=self._build_env(),
                dimensions=(self.rows, self.cols),
            ),
        )
        try:
            # The fork/exec cannot be interrupted once its thread has started.
            process = await asyncio.shield(spawn_future)
        except asyncio.CancelledError:
            logger.warning("process_spawn_cancelled", session_id=session.session_id)
            spawn_future.add_done_callback(
                functools.partial(self._discard_abandoned_spawn, session.session_id)
            )
            raise
        except Exception as e:
            logger.error(
                "process_spawn_failed",
                session_id=session.session_id,
                command=self.command,
                error=str(e),
            )
            raise ProcessSpawnError(f"Failed to start {self.command}: {e}") from e

        def _output(text: str) -> None:
            session.channel.publish(OutputFrame(data=text))
            if on_output is not None:
                on_output(session.session_id, text)

        def _exit(code: int) -> None:
            session.state = SessionState.EXITED
            session.exit_code = code
            session.channel.publish(ExitFrame(code=code))
            session.channel.close(CLOSE_NORMAL, "Process exited")

        handle = PtyProcessHandle(session.session_id, process, _output, _exit)
        self._handles[session.session_id] = handle
        handle.start()

        logger.info(
            "process_spawned",
            session_id=session.session_id,
            pid=handle.pid,
        )
        return handle

    def _discard_abandoned_spawn(
        self, session_id: str, spawn_future: "asyncio.Future[Any]"
    ) -> None:
        """Kill and reap a process whose spawn() caller was cancelled."""
        if spawn_future.cancelled() or spawn_future.exception() is not None:
            return

        process = spawn_future.result()
        logger.warning(
            "abandoned_process_killing", session_id=session_id, pid=process.pid
        )
        try:
            process.kill(signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.error(
                "abandoned_process_kill_failed",
                session_id=session_id,
                pid=process.pid,
                error=str(e),
            )
            return

        threading.Thread(
            target=self._reap_abandoned,
            args=(session_id, process),
            name=f"pty-reap-{process.pid}",
            daemon=True,
        ).start()

    @staticmethod
    def _reap_abandoned(session_id: str, process: Any) -> None:
        try:
            process.wait()
            process.close()
        except Exception as e:
            logger.warning(
                "abandoned_process_reap_failed",
                session_id=session_id,
                pid=process.pid,
                error=str(e),
            )
            return
        logger.info("abandoned_process_reaped", session_id=session_id, pid=process.pid)

    def is_running(self, session_id: str) -> bool:
        handle = self._handles.get(session_id)
        return handle is not None and not handle.exited

    async def terminate(self, session_id: str) -> TerminationOutcome:
        """Stop a session's process: SIGTERM, then SIGKILL after the timeout.

        The SIGTERM phase races the process exit against
        ``terminate_timeout``; the losing waiter is cancelled. If the
        process is still alive at the deadline it is force-killed. Errors
        while force-killing are logged, not raised: the handle is released
        either way.

        Args:
            session_id: The session whose process to stop.

        Returns:
            GRACEFUL if the process exited on SIGTERM, FORCED if SIGKILL
            was needed, ALREADY_EXITED if there was nothing to stop.
        """
        handle = self._handles.get(session_id)
        if handle is None:
            return TerminationOutcome.ALREADY_EXITED

        try:
            if handle.exited:
                return TerminationOutcome.ALREADY_EXITED

            logger.info(
                "terminate_start",
                session_id=session_id,
                pid=handle.pid,
                timeout_seconds=self.terminate_timeout,
            )

            try:
                handle.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                pass
            except OSError as e:
                logger.warning(
                    "terminate_signal_failed",
                    session_id=session_id,
                    error=str(e),
                )

            try:
                await asyncio.wait_for(
                    handle.wait_exited(), timeout=self.terminate_timeout
                )
            except TimeoutError:
                pass
            else:
                logger.info("terminate_graceful", session_id=session_id)
                return TerminationOutcome.GRACEFUL

            logger.warning(
                "terminate_timeout_force_kill",
                session_id=session_id,
                pid=handle.pid,
            )
            try:
                handle.send_signal(signal.SIGKILL)
            except Exception as e:
                logger.error(
                    "force_kill_failed",
                    session_id=session_id,
                    pid=handle.pid,
                    error=str(e),
                )
                return TerminationOutcome.FORCED

            try:
                await asyncio.wait_for(
                    handle.wait_exited(), timeout=FORCE_KILL_REAP_SECONDS
                )
            except TimeoutError:
                logger.warning("force_kill_reap_timeout", session_id=session_id)
            return TerminationOutcome.FORCED
        finally:
            self._handles.pop(session_id, None)

    def write(self, session_id: str, data: str) -> None:
        """Write input to a session's process.

        Raises:
            SessionNotFoundError: If no process exists for the session.
            SessionExitedError: If the process has exited.
        """
        self._require(session_id).write(data.encode("utf-8"))

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        """Change a session's terminal geometry.

        Raises:
            SessionNotFoundError: If no process exists for the session.
            SessionExitedError: If the process has exited.
        """
        self._require(session_id).resize(cols, rows)
        logger.debug("terminal_resized", session_id=session_id, cols=cols, rows=rows)

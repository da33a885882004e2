"""Shared test fixtures for backend tests.

Provides a pipe-backed stand-in for ``ptyprocess.PtyProcess`` so session
tests never fork real processes, plus helpers for building sessions,
registries and waiting on asynchronous conditions.
"""

import asyncio
import itertools
import os
import signal
import sys
import threading
import time
from collections.abc import AsyncGenerator, Callable, Generator
from contextlib import contextmanager
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from terminal.lifecycle import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from activity import ActivityClassifier  # noqa: E402
from api.routes import router  # noqa: E402
from api.websocket import websocket_router  # noqa: E402
from events.bus import SessionChannel, Subscription  # noqa: E402
from session_registry import SessionRegistry  # noqa: E402
from terminal.lifecycle import SessionLifecycle  # noqa: E402
from terminal.session import TerminalSession  # noqa: E402

# ---------------------------------------------------------------------------
# Fake pty process
# ---------------------------------------------------------------------------


class FakePtyProcess:
    """Pipe-backed stand-in for ``ptyprocess.PtyProcess``.

    ``fd`` is the read end of an os.pipe(); ``emit`` writes output into it
    and ``exit`` closes the write end (EOF) and releases ``wait()``.

    Attributes:
        written: Every chunk passed to ``write``.
        signals: Every signal passed to ``kill``, in order.
        ignore_sigterm: If True, SIGTERM is recorded but does not exit.
        ignore_sigkill: If True, SIGKILL is recorded but does not exit.
        kill_errors: Exceptions to raise from ``kill`` per signal.
    """

    _pids = itertools.count(900000)

    def __init__(
        self,
        argv: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        dimensions: tuple[int, int] = (24, 80),
    ) -> None:
        self.argv = list(argv)
        self.cwd = cwd
        self.env = env
        self.dimensions = dimensions
        self.pid = next(self._pids)
        self.fd, self._write_fd = os.pipe()
        self.written: list[bytes] = []
        self.signals: list[int] = []
        self.ignore_sigterm = False
        self.ignore_sigkill = False
        self.kill_errors: dict[int, Exception] = {}
        self.exitstatus: int | None = None
        self.signalstatus: int | None = None
        self.closed = False
        self._exited = threading.Event()
        self._lock = threading.Lock()

    @property
    def has_exited(self) -> bool:
        return self._exited.is_set()

    def emit(self, text: str) -> None:
        self.emit_bytes(text.encode("utf-8"))

    def emit_bytes(self, data: bytes) -> None:
        os.write(self._write_fd, data)

    def exit(self, code: int = 0, *, signum: int | None = None) -> None:
        with self._lock:
            if self._exited.is_set():
                return
            if signum is not None:
                self.signalstatus = signum
            else:
                self.exitstatus = code
            os.close(self._write_fd)
            self._exited.set()

    def wait(self) -> int | None:
        self._exited.wait()
        return self.exitstatus

    def kill(self, sig: int) -> None:
        error = self.kill_errors.get(sig)
        if error is not None:
            raise error
        self.signals.append(sig)
        if sig == signal.SIGTERM and self.ignore_sigterm:
            return
        if sig == signal.SIGKILL and self.ignore_sigkill:
            return
        self.exit(signum=sig)

    def write(self, data: bytes) -> int:
        if self.has_exited:
            raise OSError(5, "Input/output error")
        self.written.append(data)
        return len(data)

    def setwinsize(self, rows: int, cols: int) -> None:
        self.dimensions = (rows, cols)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            os.close(self.fd)


class FakePtyFactory:
    """Callable with the signature of ``PtyProcess.spawn`` that records processes.

    Attributes:
        processes: Every process spawned, in order.
        calls: The keyword arguments of every spawn call.
        error: If set, spawn raises this instead of creating a process.
        delay: Seconds to block inside spawn (runs in a worker thread).
        configure: Optional hook applied to each new process.
    """

    def __init__(self) -> None:
        self.processes: list[FakePtyProcess] = []
        self.calls: list[dict[str, Any]] = []
        self.error: Exception | None = None
        self.delay = 0.0
        self.configure: Callable[[FakePtyProcess], None] | None = None

    def __call__(
        self,
        argv: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        dimensions: tuple[int, int] = (24, 80),
    ) -> FakePtyProcess:
        self.calls.append({"argv": argv, "cwd": cwd, "env": env, "dimensions": dimensions})
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        process = FakePtyProcess(argv, cwd=cwd, env=env, dimensions=dimensions)
        if self.configure is not None:
            self.configure(process)
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakePtyProcess:
        return self.processes[-1]

    def release_all(self) -> None:
        """Exit every process so no worker thread stays blocked in wait()."""
        for process in self.processes:
            process.exit(0)


@pytest.fixture()
async def fake_pty() -> AsyncGenerator[FakePtyFactory, None]:
    """Provide a fake pty factory; every process is released at teardown.

    Teardown runs on the test event loop, so no exit watcher thread is left
    blocked in wait().
    """
    factory = FakePtyFactory()
    yield factory
    factory.release_all()


# ---------------------------------------------------------------------------
# Lifecycle / registry
# ---------------------------------------------------------------------------


def make_lifecycle(
    factory: Callable[..., Any],
    *,
    terminate_timeout: float = 0.2,
    **kwargs: Any,
) -> SessionLifecycle:
    """Build a lifecycle with a short terminate timeout for tests."""
    return SessionLifecycle(
        kwargs.pop("command", "fake-cli"),
        kwargs.pop("args", ()),
        kwargs.pop("env", None),
        terminate_timeout=terminate_timeout,
        process_factory=factory,
        **kwargs,
    )


def make_session(session_id: str, cwd: str, max_pending: int = 1000) -> TerminalSession:
    return TerminalSession(
        session_id=session_id,
        cwd=cwd,
        channel=SessionChannel(session_id, max_pending),
    )


@pytest.fixture()
def classifier() -> ActivityClassifier:
    return ActivityClassifier(debounce_seconds=0.05)


@pytest.fixture()
async def registry(
    fake_pty: FakePtyFactory, classifier: ActivityClassifier
) -> AsyncGenerator[SessionRegistry, None]:
    """A registry backed by fake processes; all sessions are closed at teardown."""
    reg = SessionRegistry(make_lifecycle(fake_pty), classifier, max_sessions=5)
    yield reg
    await reg.close_all()
    fake_pty.release_all()


# ---------------------------------------------------------------------------
# Application client
# ---------------------------------------------------------------------------


@contextmanager
def app_client(
    factory: FakePtyFactory, max_sessions: int = 5
) -> Generator[tuple[TestClient, SessionRegistry], None, None]:
    """Serve the HTTP and WebSocket routers over a fake-process registry.

    The TestClient is entered as a context manager so every request shares
    one event loop. On exit all sessions are closed on that loop and every
    fake process is released before the loop shuts down.
    """
    registry = SessionRegistry(make_lifecycle(factory), max_sessions=max_sessions)
    app = FastAPI()
    app.include_router(router)
    app.include_router(websocket_router)
    app.state.session_registry = registry

    with TestClient(app) as client:
        try:
            yield client, registry
        finally:
            client.portal.call(registry.close_all)
            factory.release_all()


# ---------------------------------------------------------------------------
# Waiting helpers
# ---------------------------------------------------------------------------


async def wait_until(
    predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01
) -> None:
    """Poll ``predicate`` on the event loop until it is true or time runs out."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


def wait_until_sync(
    predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01
) -> None:
    """Blocking variant of ``wait_until`` for TestClient tests."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        time.sleep(interval)


async def drain(subscription: Subscription, timeout: float = 2.0) -> list[Any]:
    """Collect frames from a subscription until its stream ends."""
    frames: list[Any] = []
    while True:
        frame = await asyncio.wait_for(subscription.get(), timeout=timeout)
        if frame is None:
            return frames
        frames.append(frame)

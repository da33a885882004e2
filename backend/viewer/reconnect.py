"""Reconnecting WebSocket viewer for terminal sessions.

TerminalViewer is the client side of ``/terminal/{session_id}``: it
connects, dispatches server frames to registered callbacks and, when the
connection drops, reconnects a bounded number of times with a linearly
growing delay.

Closes that mean "stop" are never retried: a normal close (1000, the
session ended or the client closed), an invalid path (4000) and an unknown
session (4001).

Usage:
    >>> viewer = TerminalViewer("ws://localhost:3080/terminal/3f1c...")
    >>> viewer.on("output", lambda data: sys.stdout.write(data))
    >>> viewer.on("exit", lambda code: print(f"exited with {code}"))
    >>> await viewer.run()
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Annotated, Any

import structlog
import websockets
from pydantic import Field, TypeAdapter, ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from events.types import ErrorFrame, ExitFrame, InputFrame, OutputFrame, ResizeFrame

logger = structlog.get_logger(__name__)

CLOSE_NORMAL = 1000
CLOSE_ABNORMAL = 1006

ViewerEvent = str
Listener = Callable[..., Any]

VIEWER_EVENTS: tuple[ViewerEvent, ...] = ("open", "output", "exit", "error", "close")

_server_frame_adapter: TypeAdapter[OutputFrame | ExitFrame | ErrorFrame] = TypeAdapter(
    Annotated[OutputFrame | ExitFrame | ErrorFrame, Field(discriminator="type")]
)


@dataclass(frozen=True)
class ReconnectPolicy:
    """When and how soon to reconnect.

    Attributes:
        max_retries: Reconnect attempts allowed since the last successful open.
        retry_delay: Base delay in seconds; attempt n waits ``n * retry_delay``.
        no_retry_codes: Close codes that end the viewer without retrying.
    """

    max_retries: int = 3
    retry_delay: float = 1.0
    no_retry_codes: frozenset[int] = field(
        default_factory=lambda: frozenset({1000, 4000, 4001})
    )

    def should_retry(self, close_code: int, retry_count: int) -> bool:
        return close_code not in self.no_retry_codes and retry_count < self.max_retries

    def delay_for(self, attempt: int) -> float:
        return self.retry_delay * attempt


class TerminalViewer:
    """WebSocket viewer with bounded automatic reconnection.

    Events and callback arguments:
        - ``open``: no arguments
        - ``output``: ``data``
        - ``exit``: ``code``
        - ``error``: ``message``
        - ``close``: ``code, reason``

    Attributes:
        url: WebSocket URL of the session terminal.
        policy: Reconnection policy.
        retry_count: Reconnect attempts since the last successful open.
    """

    def __init__(
        self,
        url: str,
        policy: ReconnectPolicy | None = None,
        *,
        connect: Callable[..., Any] = websockets.connect,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.policy = policy or ReconnectPolicy()
        self.retry_count = 0
        self._connect = connect
        self._sleep = sleep
        self._ws: Any = None
        self._closing = False
        self._listeners: dict[ViewerEvent, list[Listener]] = {
            event: [] for event in VIEWER_EVENTS
        }

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def on(self, event: ViewerEvent, callback: Listener) -> Callable[[], None]:
        """Register a callback for an event.

        Returns:
            A function that unregisters the callback. Calling it twice is
            harmless.

        Raises:
            ValueError: If ``event`` is not a viewer event.
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown viewer event: {event}")
        listeners = self._listeners[event]
        listeners.append(callback)

        def dispose() -> None:
            with contextlib.suppress(ValueError):
                listeners.remove(callback)

        return dispose

    def _emit(self, event: ViewerEvent, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception as e:
                logger.error("viewer_listener_failed", event=event, error=str(e))

    def _dispatch(self, message: str | bytes) -> None:
        try:
            frame = _server_frame_adapter.validate_json(message)
        except ValidationError as e:
            logger.warning(
                "viewer_frame_unparseable",
                url=self.url,
                error_count=e.error_count(),
            )
            return

        if isinstance(frame, OutputFrame):
            self._emit("output", frame.data)
        elif isinstance(frame, ExitFrame):
            self._emit("exit", frame.code)
        else:
            self._emit("error", frame.message)

    async def run(self) -> int:
        """Connect and stream until the viewer stops reconnecting.

        Returns:
            The close code of the final connection.
        """
        while True:
            code, reason = await self._run_once()
            self._emit("close", code, reason)

            if self._closing or not self.policy.should_retry(code, self.retry_count):
                logger.info(
                    "viewer_stopped",
                    url=self.url,
                    code=code,
                    retry_count=self.retry_count,
                )
                return code

            self.retry_count += 1
            delay = self.policy.delay_for(self.retry_count)
            logger.info(
                "viewer_reconnecting",
                url=self.url,
                code=code,
                attempt=self.retry_count,
                max_retries=self.policy.max_retries,
                delay_seconds=delay,
            )
            await self._sleep(delay)
            if self._closing:
                return code

    async def _run_once(self) -> tuple[int, str]:
        """Run one connection to completion. Returns its close code and reason."""
        try:
            async with self._connect(self.url) as ws:
                self._ws = ws
                self.retry_count = 0
                logger.info("viewer_connected", url=self.url)
                self._emit("open")
                try:
                    async for message in ws:
                        self._dispatch(message)
                except ConnectionClosed as e:
                    logger.info("viewer_connection_lost", url=self.url, error=str(e))
                finally:
                    self._ws = None
                code = ws.close_code or CLOSE_ABNORMAL
                return code, ws.close_reason or ""
        except (OSError, TimeoutError, WebSocketException) as e:
            logger.warning("viewer_connect_failed", url=self.url, error=str(e))
            self._emit("error", str(e))
            return CLOSE_ABNORMAL, str(e)

    async def _send(self, payload: str) -> bool:
        ws = self._ws
        if ws is None:
            logger.debug("viewer_send_dropped_not_connected", url=self.url)
            return False
        try:
            await ws.send(payload)
        except ConnectionClosed:
            logger.debug("viewer_send_dropped_closed", url=self.url)
            return False
        return True

    async def send_input(self, data: str) -> bool:
        """Send keystrokes. Returns False if dropped because not connected."""
        return await self._send(InputFrame(data=data).model_dump_json())

    async def send_resize(self, cols: int, rows: int) -> bool:
        """Send new terminal geometry. Returns False if dropped."""
        return await self._send(ResizeFrame(cols=cols, rows=rows).model_dump_json())

    async def close(self) -> None:
        """Close the connection and stop reconnecting."""
        self._closing = True
        self.retry_count = self.policy.max_retries
        ws = self._ws
        if ws is not None:
            await ws.close(CLOSE_NORMAL, "Client closed")
        logger.info("viewer_closed", url=self.url)

"""WebSocket handler for live terminal streaming.

This module handles ``/terminal/{session_id}`` connections: it streams a
session's output to the viewer and forwards the viewer's keystrokes and
resize requests to the session process.

Connection states are ``connecting -> open -> closed``. A connection ends
when the viewer disconnects, when the session process exits (after the
``exit`` frame), when the session is closed, or when the viewer falls too
far behind the output.
"""

import asyncio
import contextlib

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events.bus import CLOSE_NORMAL, Subscription
from events.types import (
    ErrorFrame,
    ExitFrame,
    InputFrame,
    OutputFrame,
    TransportProtocolError,
    parse_client_frame,
)
from session_registry import SessionRegistry
from terminal.errors import SessionNotFoundError

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

CLOSE_INVALID_PATH = 4000
CLOSE_SESSION_NOT_FOUND = 4001


def get_websocket_registry(websocket: WebSocket) -> SessionRegistry:
    """Return the registry stored on the application during startup."""
    registry = getattr(websocket.app.state, "session_registry", None)
    if registry is None:
        raise RuntimeError(
            "SessionRegistry not configured. Set app.state.session_registry during startup."
        )
    return registry


@websocket_router.websocket("/terminal/{session_id}")
async def terminal_endpoint(websocket: WebSocket, session_id: str) -> None:
    """WebSocket endpoint for one session's terminal.

    This endpoint handles bidirectional communication:
    - Server -> Client: ``output`` frames, then one ``exit`` frame
    - Client -> Server: ``input`` and ``resize`` frames

    Args:
        websocket: The WebSocket connection.
        session_id: The session to attach to.
    """
    logger.info("websocket_connecting", session_id=session_id)
    registry = get_websocket_registry(websocket)

    # Subscribe before accepting so the viewer misses no output produced
    # after the handshake.
    try:
        subscription = registry.subscribe(session_id)
    except SessionNotFoundError:
        logger.warning("websocket_session_not_found", session_id=session_id)
        await websocket.accept()
        await websocket.close(code=CLOSE_SESSION_NOT_FOUND, reason="Session not found")
        return

    with subscription:
        await websocket.accept()
        logger.info("websocket_open", session_id=session_id)
        await _bridge(websocket, registry, session_id, subscription)

    logger.info("websocket_closed", session_id=session_id)


@websocket_router.websocket("/terminal")
@websocket_router.websocket("/terminal/{invalid_path:path}")
async def invalid_terminal_path(websocket: WebSocket) -> None:
    """Reject terminal connections that do not name exactly one session."""
    logger.warning("websocket_invalid_path", path=websocket.url.path)
    await websocket.accept()
    await websocket.close(code=CLOSE_INVALID_PATH, reason="Invalid path")


async def _bridge(
    websocket: WebSocket,
    registry: SessionRegistry,
    session_id: str,
    subscription: Subscription,
) -> None:
    """Run the send and receive loops until either side ends the connection."""
    send_lock = asyncio.Lock()

    async def send_frame(frame: OutputFrame | ExitFrame | ErrorFrame) -> None:
        async with send_lock:
            await websocket.send_text(frame.model_dump_json())

    async def send_frames() -> None:
        """Forward channel frames to the viewer, then close the transport."""
        try:
            async for frame in subscription:
                await send_frame(frame)

            code = subscription.close_code or CLOSE_NORMAL
            logger.info(
                "websocket_stream_ended",
                session_id=session_id,
                code=code,
                reason=subscription.close_reason,
                dropped=subscription.dropped,
            )
            async with send_lock:
                await websocket.close(code=code, reason=subscription.close_reason)
        except WebSocketDisconnect:
            logger.info("websocket_disconnect_during_send", session_id=session_id)
        except Exception as e:
            logger.error("websocket_send_error", session_id=session_id, error=str(e))

    async def receive_frames() -> None:
        """Receive and dispatch frames from the viewer."""
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info(
                        "websocket_disconnect_during_receive",
                        session_id=session_id,
                        code=message.get("code"),
                    )
                    return

                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await handle_client_message(raw)
        except WebSocketDisconnect:
            logger.info("websocket_disconnect_during_receive", session_id=session_id)
        except Exception as e:
            logger.error("websocket_receive_error", session_id=session_id, error=str(e))

    async def handle_client_message(raw: str | bytes) -> None:
        try:
            frame = parse_client_frame(raw)
        except TransportProtocolError as e:
            logger.warning(
                "client_frame_malformed",
                session_id=session_id,
                error=str(e),
            )
            await send_frame(ErrorFrame(message=str(e)))
            return

        if frame is None:
            logger.warning("client_frame_unknown_type", session_id=session_id)
            return

        try:
            if isinstance(frame, InputFrame):
                registry.write(session_id, frame.data)
            else:
                registry.resize(session_id, frame.cols, frame.rows)
        except SessionNotFoundError:
            # The session is being removed; its channel close ends the send loop.
            logger.debug("client_frame_session_gone", session_id=session_id)
        except Exception as e:
            logger.error(
                "client_frame_failed",
                session_id=session_id,
                frame_type=frame.type,
                error=str(e),
            )
            await send_frame(ErrorFrame(message=str(e)))

    # Run both tasks concurrently
    send_task = asyncio.create_task(send_frames())
    receive_task = asyncio.create_task(receive_frames())

    # Wait for either task to complete (disconnect or end of stream)
    done, pending = await asyncio.wait(
        [send_task, receive_task],
        return_when=asyncio.FIRST_COMPLETED,
    )

    # Cancel any pending tasks
    for task in pending:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

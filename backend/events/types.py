"""Wire frame definitions for the terminal streaming protocol.

Every message exchanged over a ``/terminal/{session_id}`` WebSocket is a
JSON object with a ``type`` discriminator. Frames carry no session id:
the connection path identifies the session.

Client -> server:
    - ``input``: keystrokes or pasted text for the process
    - ``resize``: new terminal geometry

Server -> client:
    - ``output``: a chunk of process output, in production order
    - ``exit``: the process exited with ``code``; the transport closes next
    - ``error``: a per-frame problem; the transport stays open
"""

import json
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class TransportProtocolError(Exception):
    """Raised when a client frame is malformed.

    Malformed frames are reported back to the viewer as an ``error`` frame;
    they never close an otherwise healthy connection.
    """


class FrameType(StrEnum):
    """All frame types in the streaming protocol."""

    # Client -> server
    INPUT = "input"
    RESIZE = "resize"

    # Server -> client
    OUTPUT = "output"
    EXIT = "exit"
    ERROR = "error"


class InputFrame(BaseModel):
    """User input to forward to the process."""

    model_config = ConfigDict(frozen=True)

    type: Literal["input"] = "input"
    data: str


class ResizeFrame(BaseModel):
    """Terminal geometry change requested by the viewer."""

    model_config = ConfigDict(frozen=True)

    type: Literal["resize"] = "resize"
    cols: int = Field(gt=0, le=10000)
    rows: int = Field(gt=0, le=10000)


class OutputFrame(BaseModel):
    """A chunk of process output."""

    model_config = ConfigDict(frozen=True)

    type: Literal["output"] = "output"
    data: str


class ExitFrame(BaseModel):
    """Process exit notification. Always the last frame of a session."""

    model_config = ConfigDict(frozen=True)

    type: Literal["exit"] = "exit"
    code: int


class ErrorFrame(BaseModel):
    """A non-fatal, per-frame error reported to the viewer."""

    model_config = ConfigDict(frozen=True)

    type: Literal["error"] = "error"
    message: str


ClientFrame = Annotated[InputFrame | ResizeFrame, Field(discriminator="type")]
ServerFrame = OutputFrame | ExitFrame | ErrorFrame

_CLIENT_FRAME_TYPES = frozenset({FrameType.INPUT.value, FrameType.RESIZE.value})
_client_frame_adapter: TypeAdapter[InputFrame | ResizeFrame] = TypeAdapter(ClientFrame)


def parse_client_frame(raw: str | bytes) -> InputFrame | ResizeFrame | None:
    """Parse a raw WebSocket message into a client frame.

    Args:
        raw: The text (or binary) payload received from the viewer.

    Returns:
        The parsed frame, or None if the frame's ``type`` is not one the
        server understands. Unrecognized types are the caller's to log and
        ignore.

    Raises:
        TransportProtocolError: If the payload is not a JSON object, or a
            known frame type has missing or invalid fields.

    Examples:
        >>> parse_client_frame('{"type": "input", "data": "ls\\r"}')
        InputFrame(type='input', data='ls\\r')
        >>> parse_client_frame('{"type": "ping"}') is None
        True
    """
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise TransportProtocolError(f"Malformed frame: {e}") from e

    if not isinstance(payload, dict):
        raise TransportProtocolError("Frame must be a JSON object")

    frame_type = payload.get("type")
    if not isinstance(frame_type, str) or frame_type not in _CLIENT_FRAME_TYPES:
        return None

    try:
        return _client_frame_adapter.validate_python(payload)
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(loc) for loc in err["loc"]) for err in e.errors()
        )
        raise TransportProtocolError(
            f"Invalid {payload['type']} frame: {fields or 'validation failed'}"
        ) from e

"""Streaming protocol and output fan-out for terminal sessions.

This package provides the wire frames exchanged with remote viewers and
the per-session channel that fans process output out to them.

Key Components:
    - FrameType: Enum of all frame types in the protocol
    - InputFrame / ResizeFrame: Client -> server frames
    - OutputFrame / ExitFrame / ErrorFrame: Server -> client frames
    - parse_client_frame: Decode and validate a client message
    - SessionChannel: Fan-out of one session's frames to many subscribers
    - Subscription: One subscriber's bounded, ordered view of a channel

Usage:
    >>> from events import OutputFrame, SessionChannel
    >>>
    >>> channel = SessionChannel("3f1c...")
    >>> with channel.subscribe() as subscription:
    ...     channel.publish(OutputFrame(data="hello\\r\\n"))
    ...     frame = await subscription.get()
    >>> print(frame.data)

Frame Flow:
    1. SessionLifecycle reads process output and publishes OutputFrames
    2. Each WebSocket connection holds one Subscription
    3. The process exit publishes one ExitFrame and closes the channel
    4. Subscriptions end; the WebSocket handler closes the transport
"""

from events.bus import (
    CLOSE_GOING_AWAY,
    CLOSE_NORMAL,
    CLOSE_SUBSCRIBER_OVERFLOW,
    SessionChannel,
    Subscription,
)
from events.types import (
    ErrorFrame,
    ExitFrame,
    FrameType,
    InputFrame,
    OutputFrame,
    ResizeFrame,
    TransportProtocolError,
    parse_client_frame,
)

__all__ = [
    # Frames
    "FrameType",
    "InputFrame",
    "ResizeFrame",
    "OutputFrame",
    "ExitFrame",
    "ErrorFrame",
    "TransportProtocolError",
    "parse_client_frame",
    # Fan-out
    "SessionChannel",
    "Subscription",
    "CLOSE_NORMAL",
    "CLOSE_GOING_AWAY",
    "CLOSE_SUBSCRIBER_OVERFLOW",
]

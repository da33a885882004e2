"""Per-session fan-out channel for terminal output.

This module provides the SessionChannel class that delivers one session's
ordered stream of server frames (``output`` chunks followed by at most one
``exit``) to any number of independent subscribers.

The channel supports:
- Multiple subscribers per session, each with its own bounded buffer
- Scoped subscriptions (context manager) so every connect is paired
  with an unsubscribe
- Channel close, which ends every subscription with a close code
"""

import asyncio
import threading
from dataclasses import dataclass

import structlog

from events.types import ExitFrame, OutputFrame

logger = structlog.get_logger(__name__)

ChannelFrame = OutputFrame | ExitFrame

# WebSocket close codes carried by the end-of-stream marker.
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_SUBSCRIBER_OVERFLOW = 4002


@dataclass(frozen=True)
class _EndOfStream:
    """Marker queued after the last frame a subscription will receive."""

    code: int
    reason: str


class Subscription:
    """One subscriber's view of a session channel.

    Frames are delivered in production order through an asyncio.Queue.
    The buffer holds at most ``max_pending`` frames; a subscriber that
    falls further behind is dropped instead of stalling the producer.

    Use as a context manager so the subscription is always released:

        >>> with channel.subscribe() as subscription:
        ...     async for frame in subscription:
        ...         await websocket.send_text(frame.model_dump_json())

    Attributes:
        session_id: The session this subscription belongs to.
        close_code: Close code once the stream has ended, else None.
        close_reason: Human-readable reason once the stream has ended.
        dropped: True if the subscriber was dropped for falling behind.
    """

    def __init__(self, channel: "SessionChannel", max_pending: int) -> None:
        self.session_id = channel.session_id
        self.max_pending = max_pending
        self.close_code: int | None = None
        self.close_reason: str = ""
        self.dropped = False
        self._channel = channel
        self._queue: asyncio.Queue[ChannelFrame | _EndOfStream] = asyncio.Queue()
        self._ended = False

    def _deliver(self, frame: ChannelFrame) -> bool:
        """Queue a frame. Returns False if the subscriber overflowed."""
        if self._ended:
            return True
        if self._queue.qsize() >= self.max_pending:
            return False
        self._queue.put_nowait(frame)
        return True

    def _end(self, code: int, reason: str, *, discard_pending: bool = False) -> None:
        if self._ended:
            return
        self._ended = True
        if discard_pending:
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(_EndOfStream(code, reason))

    @property
    def pending(self) -> int:
        """Number of frames buffered and not yet consumed."""
        return self._queue.qsize()

    async def get(self) -> ChannelFrame | None:
        """Wait for the next frame.

        Returns:
            The next frame, or None once the stream has ended. After None,
            ``close_code`` and ``close_reason`` describe why.
        """
        if self.close_code is not None:
            return None
        item = await self._queue.get()
        if isinstance(item, _EndOfStream):
            self.close_code = item.code
            self.close_reason = item.reason
            return None
        return item

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChannelFrame:
        frame = await self.get()
        if frame is None:
            raise StopAsyncIteration
        return frame

    def close(self) -> None:
        """Unregister from the channel. Safe to call more than once."""
        self._channel.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class SessionChannel:
    """Fan-out of one session's frames to independent subscribers.

    Every subscriber receives every frame published after it subscribed,
    in publish order. There is no replay of earlier output, with one
    exception: once the channel has closed after an ``exit`` frame, late
    subscribers receive that final frame and then the end of stream, so a
    viewer connecting to an exited session learns its exit code.

    Backpressure:
        ``publish`` never blocks. A subscriber whose buffer already holds
        ``max_pending`` frames is dropped: its buffer is discarded and its
        stream ends with close code 4002.

    Thread Safety:
        The subscriber set is guarded by a threading.Lock, since
        subscribe/unsubscribe can race with delivery. Frame delivery itself
        uses asyncio.Queue and must run on the event loop thread.

    Attributes:
        session_id: The session this channel carries.
        max_pending: Per-subscriber buffer bound.
    """

    def __init__(self, session_id: str, max_pending: int = 1000) -> None:
        self.session_id = session_id
        self.max_pending = max_pending
        self._subscribers: set[Subscription] = set()
        self._lock = threading.Lock()
        self._closed = False
        self._final_frame: ExitFrame | None = None
        self._close_code = CLOSE_NORMAL
        self._close_reason = ""

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> Subscription:
        """Register a new subscriber.

        Returns:
            A Subscription that receives every subsequent frame. If the
            channel is already closed the subscription ends immediately
            (after the final ``exit`` frame, if there was one).
        """
        subscription = Subscription(self, self.max_pending)

        with self._lock:
            closed = self._closed
            if not closed:
                self._subscribers.add(subscription)
            subscriber_count = len(self._subscribers)

        if closed:
            if self._final_frame is not None:
                subscription._deliver(self._final_frame)
            subscription._end(self._close_code, self._close_reason)
            logger.debug("subscribe_after_close", session_id=self.session_id)
            return subscription

        logger.info(
            "subscriber_added",
            session_id=self.session_id,
            subscriber_count=subscriber_count,
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscriber. Unknown subscriptions are a no-op."""
        with self._lock:
            if subscription not in self._subscribers:
                return
            self._subscribers.discard(subscription)
            subscriber_count = len(self._subscribers)

        logger.info(
            "subscriber_removed",
            session_id=self.session_id,
            subscriber_count=subscriber_count,
        )

    def publish(self, frame: ChannelFrame) -> None:
        """Deliver a frame to every current subscriber.

        Frames published after close are discarded.

        Args:
            frame: The output or exit frame to deliver.
        """
        with self._lock:
            if self._closed:
                logger.debug(
                    "publish_after_close",
                    session_id=self.session_id,
                    frame_type=frame.type,
                )
                return
            if isinstance(frame, ExitFrame):
                self._final_frame = frame
            subscribers = list(self._subscribers)

        overflowed: list[Subscription] = []
        for subscription in subscribers:
            if not subscription._deliver(frame):
                overflowed.append(subscription)

        for subscription in overflowed:
            self._drop(subscription)

    def _drop(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(subscription)

        subscription.dropped = True
        subscription._end(
            CLOSE_SUBSCRIBER_OVERFLOW, "Viewer too slow", discard_pending=True
        )
        logger.warning(
            "subscriber_dropped_overflow",
            session_id=self.session_id,
            max_pending=self.max_pending,
        )

    def close(self, code: int = CLOSE_NORMAL, reason: str = "Session closed") -> None:
        """Close the channel and end every subscription.

        Frames already buffered are still delivered before the end of
        stream. Closing twice is a no-op; the first close code wins.

        Args:
            code: WebSocket close code for the viewers.
            reason: Human-readable close reason.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._close_code = code
            self._close_reason = reason
            subscribers = list(self._subscribers)
            self._subscribers.clear()

        for subscription in subscribers:
            subscription._end(code, reason)

        logger.info(
            "channel_closed",
            session_id=self.session_id,
            subscribers_closed=len(subscribers),
            code=code,
        )

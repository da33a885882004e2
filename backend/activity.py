"""Waiting-for-input detection from terminal output.

The ActivityClassifier watches each session's output and derives one
boolean per session: is the program sitting at a prompt waiting for the
user? The decision is a heuristic over the last few visible lines:

- A waiting pattern (a trailing ``?``, ``(y/n)``, a ``>`` prompt, a
  selection menu, ...) must match
- No working pattern (spinner glyphs, ``...``, "thinking", ...) may match

Changes are debounced so a prompt that flickers past while output is
still streaming does not toggle the flag. User input overrides the
heuristic immediately: typing means the session is no longer waiting.

Usage:
    >>> classifier = ActivityClassifier(on_change=print)
    >>> classifier.feed("3f1c...", "Continue? (y/n) ")
    >>> # ~150 ms later: prints "3f1c... True"
    >>> classifier.notify_input("3f1c...")
    >>> # prints "3f1c... False" immediately
"""

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass

import structlog

logger = structlog.get_logger(__name__)

ANSI_CSI_PATTERN = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")

WAITING_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\?\s*$", re.MULTILINE),  # question at end of line
    re.compile(r"\(y/n\)", re.IGNORECASE),
    re.compile(r"\[Y/n\]", re.IGNORECASE),
    re.compile(r"\[n/Y\]", re.IGNORECASE),
    re.compile(r"press enter", re.IGNORECASE),
    re.compile(r"waiting for", re.IGNORECASE),
    re.compile(r">\s*$", re.MULTILINE),  # shell-style prompt
    re.compile(r"\(yes/no\)", re.IGNORECASE),
    re.compile(r"\? \[.*\]:"),
    re.compile(r"\? ›"),
    re.compile(r"❯"),
    re.compile(r"\[ \]"),  # unchecked box
    re.compile(r"\[x\]", re.IGNORECASE),  # checked box
    re.compile(r"\(Use arrow", re.IGNORECASE),
    re.compile(r"Select.*:", re.IGNORECASE),
    re.compile(r"Choose.*:", re.IGNORECASE),
    re.compile(r"Enter.*:", re.IGNORECASE),
    re.compile(r"Type.*:", re.IGNORECASE),
)

WORKING_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]"),  # spinner
    re.compile(r"\.\.\."),
    re.compile(r"loading", re.IGNORECASE),
    re.compile(r"processing", re.IGNORECASE),
    re.compile(r"thinking", re.IGNORECASE),
    re.compile(r"reading", re.IGNORECASE),
    re.compile(r"writing", re.IGNORECASE),
    re.compile(r"searching", re.IGNORECASE),
)

ChangeCallback = Callable[[str, bool], None]


def strip_ansi(text: str) -> str:
    """Remove ANSI CSI escape sequences (colors, cursor moves)."""
    return ANSI_CSI_PATTERN.sub("", text)


def recent_lines(text: str, window_lines: int = 5) -> str:
    """Return the last ``window_lines`` non-blank lines joined by newlines."""
    lines = [line for line in text.split("\n") if line.strip()]
    return "\n".join(lines[-window_lines:])


def classify(text: str, window_lines: int = 5) -> bool:
    """Decide whether output text ends at a prompt waiting for input.

    Working patterns take precedence: a window that shows both a prompt
    and a spinner is still working.

    Args:
        text: Raw terminal output, possibly containing ANSI sequences.
        window_lines: How many trailing non-blank lines to inspect.

    Returns:
        True if the trailing lines look like a prompt.

    Examples:
        >>> classify("Overwrite file? (y/n) ")
        True
        >>> classify("Thinking...\\n> ")
        False
    """
    window = recent_lines(strip_ansi(text), window_lines)
    if not window:
        return False
    if any(pattern.search(window) for pattern in WORKING_PATTERNS):
        return False
    return any(pattern.search(window) for pattern in WAITING_PATTERNS)


@dataclass
class ClassifierState:
    """Per-session classifier state.

    Attributes:
        buffer: Rolling tail of recent output.
        waiting: The published flag.
        candidate: The most recently computed value, not yet published.
        timer: Pending debounce timer, if a change is waiting to settle.
    """

    buffer: str = ""
    waiting: bool = False
    candidate: bool = False
    timer: asyncio.TimerHandle | None = None

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class ActivityClassifier:
    """Debounced waiting-for-input signal for every session.

    ``feed`` and ``notify_input`` must be called from the event loop
    thread; the debounce timer is scheduled with ``loop.call_later``.

    Attributes:
        debounce_seconds: How long a changed decision must hold before
            it is published.
        buffer_chars: Size of the rolling output buffer per session.
        window_lines: Trailing non-blank lines inspected per decision.
    """

    def __init__(
        self,
        debounce_seconds: float = 0.15,
        buffer_chars: int = 2000,
        window_lines: int = 5,
        on_change: ChangeCallback | None = None,
    ) -> None:
        self.debounce_seconds = debounce_seconds
        self.buffer_chars = buffer_chars
        self.window_lines = window_lines
        self._on_change = on_change
        self._states: dict[str, ClassifierState] = {}

    def feed(self, session_id: str, chunk: str | bytes | None) -> None:
        """Process a chunk of output for a session.

        Args:
            session_id: The session the output came from.
            chunk: Output text. Bytes are decoded as UTF-8; empty or None
                input is ignored.
        """
        if not chunk:
            return
        if isinstance(chunk, bytes):
            chunk = chunk.decode("utf-8", errors="replace")

        state = self._states.setdefault(session_id, ClassifierState())
        state.buffer = (state.buffer + chunk)[-self.buffer_chars :]
        state.candidate = classify(state.buffer, self.window_lines)

        # Any new chunk restarts the debounce window.
        state.cancel_timer()
        if state.candidate == state.waiting:
            return

        loop = asyncio.get_running_loop()
        state.timer = loop.call_later(self.debounce_seconds, self._settle, session_id)

    def _settle(self, session_id: str) -> None:
        state = self._states.get(session_id)
        if state is None:
            return
        state.timer = None
        if state.candidate != state.waiting:
            self._publish(session_id, state, state.candidate)

    def _publish(self, session_id: str, state: ClassifierState, waiting: bool) -> None:
        state.waiting = waiting
        logger.debug("activity_changed", session_id=session_id, waiting=waiting)
        if self._on_change is None:
            return
        try:
            self._on_change(session_id, waiting)
        except Exception as e:
            logger.error(
                "activity_callback_failed",
                session_id=session_id,
                error=str(e),
            )

    def notify_input(self, session_id: str) -> None:
        """Record user input: the session is no longer waiting.

        Clears the buffer so the prompt that was just answered cannot be
        matched again, and cancels any pending change.
        """
        state = self._states.get(session_id)
        if state is None:
            return
        state.cancel_timer()
        state.buffer = ""
        state.candidate = False
        if state.waiting:
            self._publish(session_id, state, False)

    def is_waiting(self, session_id: str) -> bool:
        state = self._states.get(session_id)
        return state is not None and state.waiting

    def forget(self, session_id: str) -> None:
        """Drop all state for a session."""
        state = self._states.pop(session_id, None)
        if state is not None:
            state.cancel_timer()

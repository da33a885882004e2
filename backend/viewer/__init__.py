"""Client-side terminal viewer.

Key Components:
    - TerminalViewer: Streams one session terminal with bounded reconnection
    - ReconnectPolicy: Retry budget, delay and non-retryable close codes
"""

from viewer.reconnect import ReconnectPolicy, TerminalViewer

__all__ = ["ReconnectPolicy", "TerminalViewer"]

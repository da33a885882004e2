"""Server configuration for the Termdeck backend.

Every setting is read from the environment (case-insensitive) or from a
.env file next to the repo root or ``backend/``. Durations are given in
milliseconds and exposed in seconds through properties.
"""

import json
import logging
import shlex
import sys
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Termdeck settings.

    Attributes:
        terminal_command: Executable launched for every session.
        terminal_args: Arguments passed to the command.
        terminal_env: Extra environment variables for session processes.
        terminal_name: TERM value advertised to session processes.
        default_cols: Initial terminal width in columns.
        default_rows: Initial terminal height in rows.
        max_concurrent_sessions: Maximum number of active sessions.
        graceful_shutdown_timeout_ms: Time between SIGTERM and SIGKILL when
            closing a session.
        shutdown_watchdog_grace_ms: Extra time server shutdown may take
            beyond the graceful timeout before the process force-exits.
        activity_debounce_ms: How long a waiting/working change must hold
            before it is published.
        activity_buffer_chars: Rolling output buffer per session for the
            activity classifier.
        activity_window_lines: Trailing lines the classifier inspects.
        subscriber_queue_size: Frames a viewer may fall behind before it
            is disconnected.
        backend_host: Interface the server binds to.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Session Process
    terminal_command: str = "claude"
    terminal_args: str | list[str] = []
    terminal_env: dict[str, str] = {}
    terminal_name: str = "xterm-256color"
    default_cols: int = 120
    default_rows: int = 30

    # Session Limits
    max_concurrent_sessions: int = 5
    graceful_shutdown_timeout_ms: int = 5000
    shutdown_watchdog_grace_ms: int = 1000

    # Activity Detection
    activity_debounce_ms: int = 150
    activity_buffer_chars: int = 2000
    activity_window_lines: int = 5

    # Streaming
    subscriber_queue_size: int = 1000

    # Server Configuration
    backend_host: str = "localhost"
    backend_port: int = 3080
    cors_origins: str | list[str] = ["http://localhost:3080"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("terminal_args", mode="before")
    @classmethod
    def parse_terminal_args(cls, v: Any) -> list[str]:
        """Parse command arguments from string or list.

        Accepts:
        - JSON array: '["--model", "opus"]'
        - Shell-style string: '--model opus --verbose'
        - Already a list: ["--model", "opus"]
        """
        if isinstance(v, list):
            return [str(arg) for arg in v]
        if isinstance(v, str):
            v = v.strip()
            # Try JSON first
            if v.startswith("["):
                try:
                    return [str(arg) for arg in json.loads(v)]
                except json.JSONDecodeError:
                    pass
            # Fallback to shell-style splitting
            return shlex.split(v)
        return []

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Normalize allowed CORS origins to a list.

        Accepts:
        - JSON array: '["http://localhost:3080"]'
        - Comma-separated: 'http://localhost:3080,http://localhost:5173'
        - Single value: 'http://localhost:3080'
        - Already a list: ["http://localhost:3080"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            # Try JSON first
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            # Comma-separated list
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3080"]

    model_config = SettingsConfigDict(
        # .env may sit in the working directory or one level up
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def graceful_shutdown_timeout(self) -> float:
        """Graceful termination timeout in seconds."""
        return self.graceful_shutdown_timeout_ms / 1000

    @property
    def shutdown_deadline(self) -> float:
        """Upper bound in seconds on server shutdown before force-exit."""
        return (
            self.graceful_shutdown_timeout_ms + self.shutdown_watchdog_grace_ms
        ) / 1000


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structlog for the server.

    Log lines go to stderr. Session output never passes through the logger,
    only metadata about it (session ids, byte counts, exit codes).

    Args:
        log_level: Minimum level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: 'json' for one JSON object per line, 'text' for a
            colored console rendering during development.
    """
    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer: structlog.types.Processor
    if log_format == "json":
        shared.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[*shared, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


settings = Settings()

configure_logging(settings.log_level, settings.log_format)

"""Working-directory validation for new terminal sessions.

Sessions are spawned with ``cwd`` set to a directory chosen by the
operator. The directory is checked before any process is started so a
bad path is reported as ``InvalidTargetError`` rather than as a spawn
failure from inside the forked child.
"""

import os
from pathlib import Path

from terminal.errors import InvalidTargetError


def validate_working_directory(cwd: str) -> str:
    """Validate a requested working directory.

    Args:
        cwd: The directory the session process should start in.

    Returns:
        The absolute, resolved directory path.

    Raises:
        InvalidTargetError: If the path is empty, missing, not a directory,
            or not accessible.

    Examples:
        >>> validate_working_directory("/tmp")
        '/tmp'
        >>> validate_working_directory("")
        Traceback (most recent call last):
        ...
        terminal.errors.InvalidTargetError: Working directory cannot be empty
    """
    if not cwd or not cwd.strip():
        raise InvalidTargetError("Working directory cannot be empty")

    if "\x00" in cwd:
        raise InvalidTargetError("Working directory contains null byte")

    path = Path(cwd).expanduser()
    try:
        resolved = path.resolve(strict=True)
    except (OSError, RuntimeError):
        raise InvalidTargetError("Directory does not exist") from None

    if not resolved.is_dir():
        raise InvalidTargetError("Path is not a directory")

    # The child needs to chdir into it.
    if not os.access(resolved, os.X_OK):
        raise InvalidTargetError("Directory is not accessible")

    return str(resolved)

"""Errors raised while starting, running and stopping language server sessions."""

import signal
from typing import Optional


class SessionError(Exception):
    """Base class for failures confined to a single session."""


class BinaryNotFound(SessionError):
    """The configured or discovered R binary does not exist."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        if path:
            message = f"R binary not found: {path}"
        else:
            message = "R binary not found on PATH; set r.rpath"
        super().__init__(message)


class LaunchFailed(SessionError):
    """The server process could not be spawned or never connected."""


class AbnormalExit(SessionError):
    """The server process exited with a non-zero status while running."""

    def __init__(self, returncode: int):
        self.returncode = returncode
        super().__init__(f"Language server exited abnormally ({describe_exit(returncode)})")


class StopTimeout(SessionError):
    """The server did not shut down within the grace period."""


def describe_exit(returncode: int) -> str:
    """Describe a process return code the way the output channel reports it.

    Args:
        returncode: Return code as reported by asyncio; negative values are signals.

    Returns:
        Either ``from signal NAME`` or ``with exit code N``.
    """
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"from signal {name}"
    return f"with exit code {returncode}"

"""Exceptions raised by the dev server supervisor."""

from __future__ import annotations


class DevServerError(Exception):
    """Base class for dev server failures."""


class PortExhaustedError(DevServerError):
    """No free port was found within the scan range."""

    def __init__(self, start: int, tries: int):
        self.start: int = start
        self.tries: int = tries
        super().__init__(
            f"No available ports found in range {start}-{start + tries - 1}"
        )


class CustomPortUnavailableError(DevServerError):
    """An explicitly requested port is already bound."""

    def __init__(self, port: int):
        self.port: int = port
        super().__init__(f"Custom port {port} is already in use")


class SpawnTimeoutError(DevServerError):
    """The OS did not confirm process creation in time."""

    def __init__(self, command: str, timeout: float):
        self.command: str = command
        self.timeout: float = timeout
        super().__init__(f"Process '{command}' failed to spawn within {timeout}s")


class ProcessSpawnError(DevServerError):
    """The dev server process could not be created."""

    def __init__(self, message: str, *, errno: int | None = None, hint: str | None = None):
        self.errno: int | None = errno
        self.hint: str | None = hint
        super().__init__(message)


class LockIOError(DevServerError):
    """Reading, writing or deleting a lock file failed."""

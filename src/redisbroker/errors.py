"""Exception hierarchy shared by the repository, process controller and broker."""
from __future__ import annotations

from pathlib import Path


class BrokerError(RuntimeError):
    """Base class for instance lifecycle failures."""


class InstanceNotFoundError(BrokerError):
    """Raised when an instance has no directory or config document."""

    def __init__(self, instance_id: str, *, path: Path | None = None) -> None:
        """Record the missing *instance_id* and the path that was read."""
        self.instance_id = instance_id
        self.path = path
        super().__init__(f"Instance '{instance_id}' does not exist.")


class InstanceAlreadyExistsError(BrokerError):
    """Raised when provisioning an identifier whose directory already exists."""

    def __init__(self, instance_id: str) -> None:
        """Record the conflicting *instance_id*."""
        self.instance_id = instance_id
        super().__init__(f"Instance '{instance_id}' already exists.")


class CapacityExceededError(BrokerError):
    """Raised when the shared pool is at its configured maximum."""

    def __init__(self, limit: int) -> None:
        """Record the configured *limit*."""
        self.limit = limit
        super().__init__("instance limit for this service has been reached")


class UnknownPlanError(BrokerError):
    """Raised when a provision request names a plan the broker does not offer."""

    def __init__(self, plan: str) -> None:
        """Record the rejected *plan*."""
        self.plan = plan
        super().__init__("plan does not exist")


class InvalidInstanceIdError(BrokerError):
    """Raised when an identifier cannot be used as a directory name."""

    def __init__(self, instance_id: str) -> None:
        """Record the rejected *instance_id*."""
        self.instance_id = instance_id
        super().__init__(f"invalid instance id {instance_id!r}")


class FilesystemError(BrokerError):
    """Raised when on-disk instance state cannot be created, read or removed."""

    def __init__(
        self,
        message: str,
        *,
        path: Path | None = None,
        instance_id: str | None = None,
    ) -> None:
        """Attach the failing *path* and *instance_id* to the error."""
        self.path = path
        self.instance_id = instance_id
        super().__init__(message)


class CorruptStateError(BrokerError):
    """Raised when a config document lacks or mangles a required field."""

    def __init__(self, instance_id: str, path: Path, detail: str) -> None:
        """Record where the corrupt document lives and what is wrong with it."""
        self.instance_id = instance_id
        self.path = path
        super().__init__(f"Config for instance '{instance_id}' at {path} is corrupt: {detail}")


class ProcessControlError(BrokerError):
    """Raised when a process cannot be located, started or signalled."""


class PidFileError(ProcessControlError):
    """Raised when the pid file is missing or does not hold an integer."""

    def __init__(self, instance_id: str, path: Path, detail: str) -> None:
        """Record the unreadable pid file."""
        self.instance_id = instance_id
        self.path = path
        super().__init__(f"Cannot read pid for instance '{instance_id}' from {path}: {detail}")


class ProcessGoneError(ProcessControlError):
    """Raised when a signal targets a pid with no running process."""

    def __init__(self, pid: int) -> None:
        """Record the vanished *pid*."""
        self.pid = pid
        super().__init__(f"No process with pid {pid}.")


class CommandError(ProcessControlError):
    """Raised when an external command cannot be run or exits non-zero."""


class ConnectionTimeoutError(BrokerError):
    """Raised when an address does not accept TCP connections before a deadline."""

    def __init__(self, host: str, port: int, timeout: float, last_error: str = "") -> None:
        """Record the unreachable address and the last connection failure."""
        self.host = host
        self.port = port
        self.timeout = timeout
        self.last_error = last_error
        message = f"Timed out after {timeout:g}s waiting for {host}:{port} to accept connections"
        if last_error:
            message += f" (last error: {last_error})"
        super().__init__(message)


__all__ = [
    "BrokerError",
    "CapacityExceededError",
    "CommandError",
    "ConnectionTimeoutError",
    "CorruptStateError",
    "FilesystemError",
    "InstanceAlreadyExistsError",
    "InstanceNotFoundError",
    "InvalidInstanceIdError",
    "PidFileError",
    "ProcessControlError",
    "ProcessGoneError",
    "UnknownPlanError",
]

"""OS-level collaborators used by the process controller.

Each collaborator is a small protocol with one default implementation so the
controller can be exercised with fakes.
"""
from __future__ import annotations

import os
import signal
import socket
import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from ..errors import CommandError, ConnectionTimeoutError, ProcessControlError, ProcessGoneError

DEFAULT_POLL_INTERVAL = 0.01


class InstanceInformer(Protocol):
    """Resolves the OS process id of an instance."""

    def instance_pid(self, instance_id: str) -> int:
        """Return the pid recorded for *instance_id*."""


class ProcessChecker(Protocol):
    """Reports whether a pid belongs to a live process."""

    def alive(self, pid: int) -> bool:
        """Return ``True`` when *pid* is running."""


class ProcessKiller(Protocol):
    """Delivers a termination signal to a pid."""

    def kill(self, pid: int) -> None:
        """Signal *pid*; raise :class:`ProcessControlError` on failure."""


class CommandRunner(Protocol):
    """Runs an external command to completion."""

    def run(self, args: Sequence[str]) -> None:
        """Run *args*; raise :class:`CommandError` on failure."""


class ConnectabilityWaiter(Protocol):
    """Blocks until an address accepts TCP connections."""

    def __call__(self, address: tuple[str, int], timeout: float) -> None:
        """Return once *address* is connectable; raise when *timeout* elapses."""


class OSProcessChecker:
    """Probe liveness with signal 0."""

    def alive(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True


@dataclass(slots=True)
class OSProcessKiller:
    """Send *signal_number* to the target pid."""

    signal_number: int = signal.SIGKILL

    def kill(self, pid: int) -> None:
        try:
            os.kill(pid, self.signal_number)
        except ProcessLookupError as exc:
            raise ProcessGoneError(pid) from exc
        except OSError as exc:
            raise ProcessControlError(f"Failed to signal pid {pid}: {exc}") from exc


class OSCommandRunner:
    """Run commands with :func:`subprocess.run` and check the exit status."""

    def run(self, args: Sequence[str]) -> None:
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise CommandError(f"{args[0]} could not be executed: {exc}") from exc
        if result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            joined = " ".join(args)
            raise CommandError(f"{joined} failed (exit {result.returncode}): {message}")


def wait_until_connectable(
    address: tuple[str, int],
    timeout: float,
    *,
    interval: float = DEFAULT_POLL_INTERVAL,
) -> None:
    """Poll *address* until a TCP connection succeeds or *timeout* elapses."""
    host, port = address
    deadline = time.monotonic() + timeout
    last_error = ""
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ConnectionTimeoutError(host, port, timeout, last_error)
        try:
            with socket.create_connection((host, port), timeout=min(remaining, 1.0)):
                return
        except OSError as exc:
            last_error = str(exc)
        time.sleep(interval)


__all__ = [
    "CommandRunner",
    "ConnectabilityWaiter",
    "InstanceInformer",
    "OSCommandRunner",
    "OSProcessChecker",
    "OSProcessKiller",
    "ProcessChecker",
    "ProcessKiller",
    "wait_until_connectable",
]

"""Process and OS collaborators for redisbroker."""
from __future__ import annotations

from .process import ENSURE_RUNNING_TIMEOUT, ProcessController, launch_args
from .system import (
    CommandRunner,
    ConnectabilityWaiter,
    InstanceInformer,
    OSCommandRunner,
    OSProcessChecker,
    OSProcessKiller,
    ProcessChecker,
    ProcessKiller,
    wait_until_connectable,
)

__all__ = [
    "CommandRunner",
    "ConnectabilityWaiter",
    "ENSURE_RUNNING_TIMEOUT",
    "InstanceInformer",
    "OSCommandRunner",
    "OSProcessChecker",
    "OSProcessKiller",
    "ProcessChecker",
    "ProcessController",
    "ProcessKiller",
    "launch_args",
    "wait_until_connectable",
]

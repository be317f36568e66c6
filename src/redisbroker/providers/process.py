"""Start, supervise and stop ``redis-server`` processes."""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from ..errors import ProcessControlError
from ..instance import Instance
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

LOGGER = logging.getLogger(__name__)

ENSURE_RUNNING_TIMEOUT = 10.0


@dataclass(slots=True)
class ProcessController:
    """Own the OS-process half of an instance's lifecycle.

    Readiness means the server accepts TCP connections on its port. Liveness
    of an already started process is judged from its pid alone.
    """

    informer: InstanceInformer
    command_runner: CommandRunner = field(default_factory=OSCommandRunner)
    process_checker: ProcessChecker = field(default_factory=OSProcessChecker)
    process_killer: ProcessKiller = field(default_factory=OSProcessKiller)
    wait_until_connectable: ConnectabilityWaiter = wait_until_connectable
    executable: str = "redis-server"
    ensure_running_timeout: float = ENSURE_RUNNING_TIMEOUT

    def start_and_wait_until_ready(
        self,
        instance: Instance,
        config_path: str,
        data_dir: str,
        pid_file_path: str,
        log_file_path: str,
        timeout: float,
    ) -> None:
        """Launch the server with the standard flags and wait for readiness."""
        args = launch_args(config_path, data_dir, pid_file_path, log_file_path)
        self.start_and_wait_until_ready_with_config(instance, args, timeout)

    def start_and_wait_until_ready_with_config(
        self,
        instance: Instance,
        args: Sequence[str],
        timeout: float,
    ) -> None:
        """Run the executable with *args*, then block until connectable.

        The waiter's exception is re-raised unchanged on timeout.
        """
        command = [str(self.executable), *args]
        LOGGER.debug("Starting instance %s: %s", instance.id, " ".join(command))
        self.command_runner.run(command)
        self.wait_until_connectable(instance.address, timeout)

    def ensure_running(
        self,
        instance: Instance,
        config_path: str,
        data_dir: str,
        pid_file_path: str,
        log_file_path: str,
    ) -> bool:
        """Start the instance unless its recorded pid is alive.

        Returns ``True`` when a start was performed.
        """
        try:
            pid = self.informer.instance_pid(instance.id)
        except ProcessControlError as exc:
            LOGGER.info("No usable pid for instance %s (%s); starting it.", instance.id, exc)
        else:
            if self.process_checker.alive(pid):
                return False
            LOGGER.info("Instance %s (pid %s) is not running; starting it.", instance.id, pid)

        self.start_and_wait_until_ready(
            instance,
            config_path,
            data_dir,
            pid_file_path,
            log_file_path,
            self.ensure_running_timeout,
        )
        return True

    def kill(self, instance: Instance) -> None:
        """Signal the instance's process; does not wait for it to exit."""
        pid = self.informer.instance_pid(instance.id)
        self.process_killer.kill(pid)


def launch_args(
    config_path: str,
    data_dir: str,
    pid_file_path: str,
    log_file_path: str,
) -> list[str]:
    """Return the server arguments for an instance."""
    return [
        str(config_path),
        "--pidfile",
        str(pid_file_path),
        "--dir",
        str(data_dir),
        "--logfile",
        str(log_file_path),
    ]


__all__ = ["ENSURE_RUNNING_TIMEOUT", "ProcessController", "launch_args"]

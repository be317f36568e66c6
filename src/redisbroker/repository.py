"""Filesystem-backed instance repository.

The directory tree under the configured data and log roots is the only record
of which instances exist. Nothing is cached: every lookup re-reads the
instance's ``redis.conf``, so a crashed broker recovers its view of the pool
by enumerating directories.
"""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .errors import (
    CorruptStateError,
    FilesystemError,
    InstanceNotFoundError,
    PidFileError,
)
from .instance import Instance, InstanceCredentials
from .layout import InstanceLayout
from .redisconf import RedisConf, RedisConfError, copy_with_instance_additions

LOGGER = logging.getLogger(__name__)

DIRECTORY_MODE = 0o755


@dataclass(slots=True)
class LocalRepository:
    """Create, read and remove instance state on the local host."""

    layout: InstanceLayout
    host: str
    default_config_path: Path | None = None

    # Lookup -----------------------------------------------------------
    def find_by_id(self, instance_id: str) -> Instance:
        """Load the instance from its config document."""
        path = self.layout.config_path(instance_id)
        try:
            document = RedisConf.load(path)
        except FileNotFoundError as exc:
            raise InstanceNotFoundError(instance_id, path=path) from exc
        except OSError as exc:
            raise FilesystemError(
                f"Cannot read config for instance '{instance_id}' at {path}: {exc}",
                path=path,
                instance_id=instance_id,
            ) from exc

        if "port" not in document:
            raise CorruptStateError(instance_id, path, "missing 'port'")
        raw_port = document.get("port")
        try:
            port = int(raw_port)
        except ValueError as exc:
            raise CorruptStateError(
                instance_id, path, f"'port' is not an integer: {raw_port!r}"
            ) from exc

        return Instance(
            id=instance_id,
            host=self.host,
            port=port,
            password=document.get("requirepass"),
        )

    def instance_exists(self, instance_id: str) -> bool:
        """Return whether the instance's base directory is present."""
        path = self.layout.base_dir(instance_id)
        try:
            os.stat(path)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise FilesystemError(
                f"Cannot stat instance directory {path}: {exc}",
                path=path,
                instance_id=instance_id,
            ) from exc
        return True

    def all_instances(self) -> list[Instance]:
        """Load every instance under the data root; stop at the first failure."""
        try:
            entries = sorted(self.layout.data_root.iterdir())
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise FilesystemError(
                f"Cannot list instances under {self.layout.data_root}: {exc}",
                path=self.layout.data_root,
            ) from exc
        instances: list[Instance] = []
        for entry in entries:
            if not entry.is_dir():
                continue
            try:
                instances.append(self.find_by_id(entry.name))
            except InstanceNotFoundError as exc:
                # A directory without a config is a setup that stopped part way.
                raise CorruptStateError(
                    entry.name, self.layout.config_path(entry.name), "missing config document"
                ) from exc
        return instances

    def instance_count(self) -> int:
        """Return the number of instances in the pool."""
        return len(self.all_instances())

    def used_ports(self) -> list[int]:
        """Return the ports held by existing instances."""
        return [instance.port for instance in self.all_instances()]

    # Allocation -------------------------------------------------------
    def setup(self, instance: Instance) -> None:
        """Create directories, the lock marker and the config document.

        A failing step aborts the sequence; earlier steps are not undone.
        """
        self._step("ensure-dirs-exist", instance, self.ensure_directories_exist)
        self._step("lock-shared-instance", instance, self.lock)
        self._step("write-config-file", instance, self.write_config_file)

    def ensure_directories_exist(self, instance: Instance) -> None:
        """Create the data and log directories if missing."""
        for path in (self.layout.data_dir(instance.id), self.layout.log_dir(instance.id)):
            try:
                path.mkdir(mode=DIRECTORY_MODE, parents=True, exist_ok=True)
            except OSError as exc:
                raise FilesystemError(
                    f"mkdir {exc.filename or path}: {exc.strerror or exc}",
                    path=Path(exc.filename) if exc.filename else path,
                    instance_id=instance.id,
                ) from exc

    def lock(self, instance: Instance) -> None:
        """Create the zero-byte lock marker."""
        path = self.layout.lock_path(instance.id)
        try:
            path.touch()
        except OSError as exc:
            raise FilesystemError(
                f"Cannot create lock marker {path}: {exc}",
                path=path,
                instance_id=instance.id,
            ) from exc

    def unlock(self, instance: Instance) -> None:
        """Remove the lock marker; fails when it is absent."""
        path = self.layout.lock_path(instance.id)
        try:
            path.unlink()
        except OSError as exc:
            raise FilesystemError(
                f"Cannot remove lock marker {path}: {exc}",
                path=path,
                instance_id=instance.id,
            ) from exc

    def is_locked(self, instance_id: str) -> bool:
        """Return whether the lock marker is present."""
        return self.layout.lock_path(instance_id).exists()

    def write_config_file(self, instance: Instance) -> None:
        """Render the template with the instance's identity, port and password."""
        path = self.layout.config_path(instance.id)
        try:
            copy_with_instance_additions(
                self.default_config_path,
                path,
                instance_id=instance.id,
                port=instance.port,
                password=instance.password,
            )
        except RedisConfError as exc:
            raise FilesystemError(
                str(exc), path=self.default_config_path, instance_id=instance.id
            ) from exc
        except OSError as exc:
            raise FilesystemError(
                f"Cannot write config {path}: {exc}", path=path, instance_id=instance.id
            ) from exc

    # Bindings ---------------------------------------------------------
    def bind(self, instance_id: str, binding_id: str) -> InstanceCredentials:
        """Return the instance's credentials; every binding gets the same ones."""
        return self.find_by_id(instance_id).credentials()

    def unbind(self, instance_id: str, binding_id: str) -> None:
        """Nothing to release for shared instances."""

    # Removal ----------------------------------------------------------
    def delete(self, instance_id: str) -> None:
        """Remove the base and log trees.

        Both removals are attempted even if the first fails, and already
        missing trees count as removed, so a failed delete can be retried.
        """
        failures: list[str] = []
        failed_path: Path | None = None
        for path in (self.layout.base_dir(instance_id), self.layout.log_dir(instance_id)):
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                LOGGER.error(
                    "delete-instance failed for instance %s at %s: %s", instance_id, path, exc
                )
                failures.append(f"{path}: {exc}")
                failed_path = failed_path or path
        if failures:
            raise FilesystemError(
                f"Failed to delete instance '{instance_id}': {'; '.join(failures)}",
                path=failed_path,
                instance_id=instance_id,
            )

    # Process information ----------------------------------------------
    def instance_pid(self, instance_id: str) -> int:
        """Return the pid recorded in the instance's pid file."""
        path = self.layout.pid_file_path(instance_id)
        try:
            content = path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise PidFileError(instance_id, path, str(exc)) from exc
        try:
            pid = int(content)
        except ValueError as exc:
            raise PidFileError(instance_id, path, f"not an integer: {content!r}") from exc
        if pid <= 0:
            raise PidFileError(instance_id, path, f"not a positive pid: {pid}")
        return pid

    # ------------------------------------------------------------------
    def _step(self, name: str, instance: Instance, action: Callable[[Instance], None]) -> None:
        try:
            action(instance)
        except FilesystemError as exc:
            LOGGER.error(
                "%s failed for instance %s at %s: %s", name, instance.id, exc.path, exc
            )
            raise


__all__ = ["LocalRepository"]

"""Canonical on-disk locations for instance state."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .errors import InvalidInstanceIdError

CONFIG_FILE_NAME = "redis.conf"
LOCK_FILE_NAME = "lock"
PID_FILE_NAME = "redis-server.pid"
LOG_FILE_NAME = "redis-server.log"
DB_DIR_NAME = "db"


def validate_instance_id(instance_id: str) -> str:
    """Return *instance_id* if it names exactly one directory under a root."""
    if (
        not instance_id
        or instance_id != instance_id.strip()
        or instance_id in {".", ".."}
        or "/" in instance_id
        or "\x00" in instance_id
    ):
        raise InvalidInstanceIdError(instance_id)
    return instance_id


@dataclass(frozen=True)
class InstanceLayout:
    """Compute instance paths from the configured data and log roots."""

    data_root: Path
    log_root: Path

    def base_dir(self, instance_id: str) -> Path:
        """``<data_root>/<id>``; its presence defines existence."""
        return self.data_root / validate_instance_id(instance_id)

    def data_dir(self, instance_id: str) -> Path:
        """Directory Redis persists its dump into."""
        return self.base_dir(instance_id) / DB_DIR_NAME

    def config_path(self, instance_id: str) -> Path:
        return self.base_dir(instance_id) / CONFIG_FILE_NAME

    def lock_path(self, instance_id: str) -> Path:
        return self.base_dir(instance_id) / LOCK_FILE_NAME

    def pid_file_path(self, instance_id: str) -> Path:
        return self.base_dir(instance_id) / PID_FILE_NAME

    def log_dir(self, instance_id: str) -> Path:
        return self.log_root / validate_instance_id(instance_id)

    def log_file_path(self, instance_id: str) -> Path:
        return self.log_dir(instance_id) / LOG_FILE_NAME


__all__ = [
    "CONFIG_FILE_NAME",
    "DB_DIR_NAME",
    "InstanceLayout",
    "LOCK_FILE_NAME",
    "LOG_FILE_NAME",
    "PID_FILE_NAME",
    "validate_instance_id",
]

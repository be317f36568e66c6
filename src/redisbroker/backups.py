"""Snapshots of running instances and the backup index.

:class:`Snapshotter` is the single-method capability backup pipelines are
written against. :class:`RedisSnapshotter` implements it for ``redis-server``
instances by forcing a ``BGSAVE`` and copying the resulting RDB dump.
"""
from __future__ import annotations

import hashlib
import json
import os
import re
import secrets
import shutil
import tempfile
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import redis

from .instance import Instance


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


class SnapshotError(BackupError):
    """Raised when a snapshot cannot be produced."""


class SnapshotConnectionError(SnapshotError):
    """Raised when the instance cannot be reached."""


class SnapshotCommandError(SnapshotError):
    """Raised when the instance rejects a snapshot command."""


class SnapshotTimeoutError(SnapshotError):
    """Raised when the background save does not finish in time."""


class IncompleteArtifactError(SnapshotError):
    """Raised when the dump file is missing or empty after a save."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _require_text(value: str, label: str) -> str:
    text = value.strip()
    if not text:
        raise BackupRegistryError(f"{label} must not be blank.")
    return text


@dataclass(frozen=True)
class Artifact:
    """A complete point-in-time copy of one instance's data."""

    instance_id: str
    path: Path
    created_at: str
    size_bytes: int
    checksum: str


class Snapshotter(Protocol):
    """Produces an :class:`Artifact` from a live instance."""

    def snapshot(self) -> Artifact:
        """Return an artifact or raise :class:`SnapshotError`."""


ClientFactory = Callable[[Instance], Any]


def default_client_factory(instance: Instance) -> redis.Redis:
    """Return a redis-py client for *instance*."""
    return redis.Redis(
        host=instance.host,
        port=instance.port,
        password=instance.password or None,
        socket_timeout=5.0,
        socket_connect_timeout=5.0,
    )


@dataclass(slots=True)
class RedisSnapshotter:
    """Snapshot one running instance into *destination_dir*."""

    instance: Instance
    destination_dir: Path
    timeout: float = 60.0
    poll_interval: float = 0.1
    client_factory: ClientFactory = default_client_factory
    backup_id: str | None = None

    def snapshot(self) -> Artifact:
        """Force a background save and copy the dump once it completes."""
        client = self.client_factory(self.instance)
        try:
            self._command("BGSAVE", client.bgsave)
            self._wait_for_save(client)
            dump_path = self._dump_path(client)
        finally:
            client.close()

        return self._copy_dump(dump_path)

    # ------------------------------------------------------------------
    def _command(self, name: str, call: Callable[[], Any]) -> Any:
        try:
            return call()
        except redis.exceptions.ConnectionError as exc:
            raise SnapshotConnectionError(
                f"Cannot reach instance '{self.instance.id}' at "
                f"{self.instance.host}:{self.instance.port}: {exc}"
            ) from exc
        except redis.exceptions.TimeoutError as exc:
            raise SnapshotConnectionError(
                f"Instance '{self.instance.id}' timed out during {name}: {exc}"
            ) from exc
        except redis.exceptions.RedisError as exc:
            raise SnapshotCommandError(
                f"{name} failed on instance '{self.instance.id}': {exc}"
            ) from exc

    def _wait_for_save(self, client: Any) -> None:
        deadline = time.monotonic() + self.timeout
        while True:
            info = self._command("INFO persistence", lambda: client.info("persistence"))
            if not int(info.get("rdb_bgsave_in_progress", 0)):
                status = _decode(info.get("rdb_last_bgsave_status", "ok"))
                if status != "ok":
                    raise SnapshotCommandError(
                        f"BGSAVE on instance '{self.instance.id}' finished with "
                        f"status '{status}'."
                    )
                return
            if time.monotonic() >= deadline:
                raise SnapshotTimeoutError(
                    f"BGSAVE on instance '{self.instance.id}' did not finish "
                    f"within {self.timeout:g}s."
                )
            time.sleep(self.poll_interval)

    def _dump_path(self, client: Any) -> Path:
        directory = self._command("CONFIG GET dir", lambda: client.config_get("dir"))
        filename = self._command(
            "CONFIG GET dbfilename", lambda: client.config_get("dbfilename")
        )
        dir_value = _decode(directory.get("dir"))
        name_value = _decode(filename.get("dbfilename"))
        if not dir_value or not name_value:
            raise SnapshotCommandError(
                f"Instance '{self.instance.id}' did not report its dump location."
            )
        return Path(dir_value) / name_value

    def _copy_dump(self, dump_path: Path) -> Artifact:
        try:
            size = dump_path.stat().st_size
        except FileNotFoundError as exc:
            raise IncompleteArtifactError(f"Dump file {dump_path} does not exist.") from exc
        if size == 0:
            raise IncompleteArtifactError(f"Dump file {dump_path} is empty.")

        backup_id = self.backup_id or generate_identifier(self.instance.id)
        destination = self.destination_dir / f"{backup_id}.rdb"
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(dump_path, destination)
        except OSError as exc:
            raise SnapshotError(f"Failed to copy {dump_path} to {destination}: {exc}") from exc

        copied_size = destination.stat().st_size
        if copied_size != size:
            raise IncompleteArtifactError(
                f"Copied {copied_size} of {size} bytes from {dump_path}."
            )
        return Artifact(
            instance_id=self.instance.id,
            path=destination,
            created_at=_now_iso(),
            size_bytes=copied_size,
            checksum=sha256_file(destination),
        )


def _decode(value: object) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return "" if value is None else str(value)


def sha256_file(path: Path) -> str:
    """Return the hex SHA-256 digest of *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def generate_identifier(instance: str) -> str:
    """Return a unique backup identifier for *instance*."""
    stamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
    slug = re.sub(r"[^A-Za-z0-9_-]", "-", instance)
    return f"{stamp}-{slug}-{secrets.token_hex(3)}"


@dataclass(slots=True)
class BackupsRegistry:
    """JSON index of snapshot artifacts stored under *root*.

    The index is a single ``{"backups": [...]}`` document rewritten atomically
    on every append; entries are kept in creation order.
    """

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Expand ``~`` in the configured paths."""
        self.root = Path(self.root).expanduser()
        self.index = Path(self.index).expanduser()

    def ensure_root(self) -> None:
        """Create the backup root with group-readable permissions."""
        try:
            self.root.mkdir(mode=0o750, parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupRegistryError(f"Cannot create backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the index document, ``{"backups": []}`` when none exists yet."""
        try:
            document = json.loads(self.index.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {"backups": []}
        except (OSError, json.JSONDecodeError) as exc:
            raise BackupRegistryError(f"Backup index {self.index} is corrupted: {exc}") from exc
        if not isinstance(document, Mapping):
            raise BackupRegistryError(f"Backup index {self.index} is not a JSON object.")
        return dict(document)

    def list_entries(self) -> list[dict[str, object]]:
        """Return every well-formed entry in the index."""
        backups = self.read().get("backups")
        if not isinstance(backups, list):
            return []
        return [dict(item) for item in backups if isinstance(item, Mapping)]

    def append(self, entry: Mapping[str, object]) -> None:
        """Add *entry* to the end of the index."""
        self._write([*self.list_entries(), dict(entry)])

    def find_by_id(self, backup_id: str) -> dict[str, object] | None:
        """Return the entry whose ``id`` is *backup_id*."""
        wanted = _require_text(backup_id, "Backup identifier")
        return next(
            (entry for entry in self.list_entries() if str(entry.get("id")) == wanted),
            None,
        )

    def entries_for_instance(self, instance: str) -> list[dict[str, object]]:
        """Return entries recorded for *instance*, oldest first."""
        wanted = _require_text(instance, "Instance identifier")
        return [entry for entry in self.list_entries() if str(entry.get("instance")) == wanted]

    def archive_directory(self, instance: str) -> Path:
        """Return where artifacts of *instance* are stored."""
        return self.root / instance

    def _write(self, entries: list[dict[str, object]]) -> None:
        self.ensure_root()
        self.index.parent.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(dir=str(self.index.parent), prefix=f".{self.index.name}.")
        staging = Path(name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump({"backups": entries}, handle, indent=2)
                handle.write("\n")
            os.chmod(staging, 0o640)
            os.replace(staging, self.index)
        except OSError as exc:
            raise BackupRegistryError(f"Cannot write backup index {self.index}: {exc}") from exc
        finally:
            staging.unlink(missing_ok=True)


@dataclass(slots=True)
class BackupEntryBuilder:
    """Helper for constructing backup index entries from an artifact."""

    artifact: Artifact
    labels: list[str] = field(default_factory=list)

    def build(self, *, backup_id: str) -> dict[str, object]:
        """Return the JSON-serialisable entry for the backup index."""
        return {
            "id": backup_id,
            "instance": self.artifact.instance_id,
            "created_at": self.artifact.created_at,
            "path": str(self.artifact.path),
            "format": "rdb",
            "size_bytes": self.artifact.size_bytes,
            "checksum": {"algorithm": "sha256", "value": self.artifact.checksum},
            "status": "available",
            "metadata": {"labels": list(self.labels)},
        }


__all__ = [
    "Artifact",
    "BackupEntryBuilder",
    "BackupError",
    "BackupRegistryError",
    "BackupsRegistry",
    "IncompleteArtifactError",
    "RedisSnapshotter",
    "SnapshotCommandError",
    "SnapshotConnectionError",
    "SnapshotError",
    "SnapshotTimeoutError",
    "Snapshotter",
    "default_client_factory",
    "generate_identifier",
    "sha256_file",
]

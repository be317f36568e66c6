"""Tests for snapshots and the backups index."""
from __future__ import annotations

import hashlib
from pathlib import Path

import pytest
import redis

from redisbroker.backups import (
    Artifact,
    BackupEntryBuilder,
    BackupRegistryError,
    BackupsRegistry,
    IncompleteArtifactError,
    RedisSnapshotter,
    SnapshotCommandError,
    SnapshotConnectionError,
    SnapshotTimeoutError,
    generate_identifier,
)
from redisbroker.instance import Instance

INSTANCE = Instance(id="alpha", host="127.0.0.1", port=45678, password="pw")


class FakeRedis:
    """Just enough of the redis-py client for snapshotting."""

    def __init__(
        self,
        dump_dir: Path,
        *,
        payload: bytes = b"REDIS0009-data",
        progress: list[int] | None = None,
        status: str = "ok",
        bgsave_error: Exception | None = None,
    ) -> None:
        self.dump_dir = dump_dir
        self.payload = payload
        self.progress = list(progress if progress is not None else [1, 0])
        self.status = status
        self.bgsave_error = bgsave_error
        self.calls: list[str] = []
        self.closed = False

    def bgsave(self) -> bool:
        self.calls.append("bgsave")
        if self.bgsave_error is not None:
            raise self.bgsave_error
        (self.dump_dir / "dump.rdb").write_bytes(self.payload)
        return True

    def info(self, section: str) -> dict[str, object]:
        self.calls.append(f"info {section}")
        in_progress = self.progress.pop(0) if len(self.progress) > 1 else self.progress[0]
        return {"rdb_bgsave_in_progress": in_progress, "rdb_last_bgsave_status": self.status}

    def config_get(self, name: str) -> dict[str, str]:
        values = {"dir": str(self.dump_dir), "dbfilename": "dump.rdb"}
        return {name: values[name]}

    def close(self) -> None:
        self.closed = True


def _snapshotter(tmp_path: Path, client: FakeRedis, **kwargs: object) -> RedisSnapshotter:
    return RedisSnapshotter(
        instance=INSTANCE,
        destination_dir=tmp_path / "backups" / "alpha",
        poll_interval=0.0,
        client_factory=lambda instance: client,
        **kwargs,
    )


def test_snapshot_copies_completed_dump(tmp_path: Path) -> None:
    """The dump is copied once the background save reports completion."""
    client = FakeRedis(tmp_path)

    artifact = _snapshotter(tmp_path, client, backup_id="b1").snapshot()

    assert artifact.instance_id == "alpha"
    assert artifact.path == tmp_path / "backups" / "alpha" / "b1.rdb"
    assert artifact.path.read_bytes() == b"REDIS0009-data"
    assert artifact.size_bytes == len(b"REDIS0009-data")
    assert artifact.checksum == hashlib.sha256(b"REDIS0009-data").hexdigest()
    assert client.calls == ["bgsave", "info persistence", "info persistence"]
    assert client.closed is True


def test_snapshot_connection_failure(tmp_path: Path) -> None:
    client = FakeRedis(tmp_path, bgsave_error=redis.exceptions.ConnectionError("refused"))

    with pytest.raises(SnapshotConnectionError, match="Cannot reach instance 'alpha'"):
        _snapshotter(tmp_path, client).snapshot()

    assert client.closed is True


def test_snapshot_rejected_command(tmp_path: Path) -> None:
    client = FakeRedis(tmp_path, bgsave_error=redis.exceptions.ResponseError("NOAUTH"))

    with pytest.raises(SnapshotCommandError, match="BGSAVE failed"):
        _snapshotter(tmp_path, client).snapshot()


def test_snapshot_failed_background_save(tmp_path: Path) -> None:
    client = FakeRedis(tmp_path, status="err")

    with pytest.raises(SnapshotCommandError, match="status 'err'"):
        _snapshotter(tmp_path, client).snapshot()


def test_snapshot_times_out(tmp_path: Path) -> None:
    """A save that never finishes raises after the timeout."""
    client = FakeRedis(tmp_path, progress=[1])

    with pytest.raises(SnapshotTimeoutError):
        _snapshotter(tmp_path, client, timeout=0.0).snapshot()


def test_snapshot_rejects_empty_dump(tmp_path: Path) -> None:
    """An empty dump never becomes an artifact."""
    client = FakeRedis(tmp_path, payload=b"")

    with pytest.raises(IncompleteArtifactError):
        _snapshotter(tmp_path, client).snapshot()

    assert not (tmp_path / "backups" / "alpha").exists()


def test_generate_identifier_includes_instance() -> None:
    backup_id = generate_identifier("tenant/alpha")

    assert backup_id.startswith("20")
    assert "tenant-alpha" in backup_id
    assert "/" not in backup_id


def _entry(tmp_path: Path, backup_id: str, instance: str = "alpha") -> dict[str, object]:
    artifact = Artifact(
        instance_id=instance,
        path=tmp_path / "backups" / instance / f"{backup_id}.rdb",
        created_at="2024-01-01T00:00:00Z",
        size_bytes=10,
        checksum="deadbeef",
    )
    return BackupEntryBuilder(artifact, labels=["manual"]).build(backup_id=backup_id)


def test_backups_registry_append_and_read(tmp_path: Path) -> None:
    """Append persists entries in backups.json."""
    registry = BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json")

    registry.append(_entry(tmp_path, "b1"))
    registry.append(_entry(tmp_path, "b2", instance="beta"))

    data = registry.read()
    assert [entry["id"] for entry in data["backups"]] == ["b1", "b2"]
    assert data["backups"][0]["format"] == "rdb"
    assert data["backups"][0]["checksum"] == {"algorithm": "sha256", "value": "deadbeef"}
    assert data["backups"][0]["metadata"] == {"labels": ["manual"]}
    assert registry.find_by_id("b2")["instance"] == "beta"
    assert registry.find_by_id("missing") is None
    assert [entry["id"] for entry in registry.entries_for_instance("alpha")] == ["b1"]
    assert registry.archive_directory("alpha") == tmp_path / "backups" / "alpha"


def test_backups_registry_rejects_corrupt_index(tmp_path: Path) -> None:
    index = tmp_path / "backups" / "backups.json"
    index.parent.mkdir()
    index.write_text("{not json", encoding="utf-8")
    registry = BackupsRegistry(tmp_path / "backups", index)

    with pytest.raises(BackupRegistryError, match="corrupted"):
        registry.list_entries()


def test_backups_registry_missing_index_is_empty(tmp_path: Path) -> None:
    registry = BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json")

    assert registry.list_entries() == []

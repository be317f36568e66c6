"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from redisbroker.locking import LockError, LockManager, LockTimeoutError


def test_instance_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "instances" / "alpha.lock"
    with manager.instance_lock("alpha") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.instance_lock("alpha", timeout=0.2):
        pass


def test_instance_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("alpha"):
        with pytest.raises(LockTimeoutError):
            with manager.instance_lock("alpha", timeout=0.1):
                pass


def test_mutate_instances_acquires_global_then_instance(tmp_path: Path) -> None:
    """Lock bundles acquire global first followed by per-instance locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_instances(["beta", "alpha"]) as bundle:
        assert bundle.wait_ms >= 0
        assert [handle.path for handle in bundle.handles] == [
            tmp_path / "run" / "redisbroker.lock",
            tmp_path / "run" / "instances" / "alpha.lock",
            tmp_path / "run" / "instances" / "beta.lock",
        ]


def test_mutate_instances_can_skip_global(tmp_path: Path) -> None:
    """Instance-only bundles leave the global lock available."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_instances(["alpha"], include_global=False) as bundle:
        assert [handle.path.name for handle in bundle.handles] == ["alpha.lock"]
        with manager.global_lock(timeout=0.1):
            pass


def test_lock_name_must_not_be_blank(tmp_path: Path) -> None:
    """Blank lock names are rejected."""
    manager = LockManager(tmp_path / "run")

    with pytest.raises(LockError):
        manager.lock_path("  ")


def test_instance_named_like_global_lock_does_not_conflict(tmp_path: Path) -> None:
    """An instance id equal to the global lock name gets its own lock file."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_instances(["redisbroker"], timeout=0.2) as bundle:
        assert len({handle.path for handle in bundle.handles}) == 2

"""Advisory locks that serialise mutating broker operations.

Locks are ``fcntl.flock`` holds on files under the runtime directory. The
global lock (``redisbroker.lock``) guards fleet-wide decisions such as the
capacity check; per-instance locks (``instances/<id>.lock``) guard one
instance. Instance locks live in their own directory so no instance id can
name the global lock file. Lock files record the holder's pid for
diagnostics and are left in place after release.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

GLOBAL_LOCK_NAME = "redisbroker"
INSTANCE_LOCK_DIR = "instances"
_POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Raised when a lock file cannot be prepared."""


class LockTimeoutError(LockError):
    """Raised when a lock is not acquired before the timeout elapses."""


@dataclass(slots=True)
class LockHandle:
    """A held lock."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together."""

    handles: list[LockHandle] = field(default_factory=list)

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting across the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire global and per-instance locks under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = float(default_timeout)

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name* in the runtime directory."""
        return self.runtime_dir / _lock_file_name(name)

    def instance_lock_path(self, name: str) -> Path:
        """Return the lock file path for instance *name*."""
        return self.runtime_dir / INSTANCE_LOCK_DIR / _lock_file_name(name)

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the broker-wide lock."""
        with self._acquire(self.lock_path(GLOBAL_LOCK_NAME), timeout) as handle:
            yield handle

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for instance *name*."""
        with self._acquire(self.instance_lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        include_global: bool = True,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock (optionally) followed by sorted instance locks."""
        bundle = LockBundle()
        with ExitStack() as stack:
            if include_global:
                bundle.handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for name in sorted(set(names)):
                bundle.handles.append(
                    stack.enter_context(self.instance_lock(name, timeout=timeout))
                )
            yield bundle

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else float(timeout)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handle = path.open("a+", encoding="utf-8")
        except OSError as exc:
            raise LockError(f"Failed to open lock file {path}: {exc}") from exc

        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:g}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(handle, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


def _lock_file_name(name: str) -> str:
    safe = name.strip().replace("/", "-")
    if not safe:
        raise LockError("Lock name must be a non-empty string.")
    return f"{safe}.lock"


def _write_metadata(handle: IO[str], path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
    }
    handle.seek(0)
    handle.truncate()
    handle.write(json.dumps(payload))
    handle.flush()


__all__ = ["LockBundle", "LockError", "LockHandle", "LockManager", "LockTimeoutError"]

"""Structured operation logging for redisbroker.

Every broker operation is recorded as one JSON object per line in
``<logs_dir>/operations.jsonl``. Logging never interrupts an operation: when
the directory cannot be prepared, or a write fails, the logger disables itself
and carries on silently.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> Any:
    """Return *value* converted to JSON-safe primitives."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Collects the outcome of one logged operation."""

    command: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    op_id: str
    started_at: str
    _started: float
    result: dict[str, Any] | None = None
    lock_wait_ms: int | None = None

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the operation waited on locks."""
        self.lock_wait_ms = max(int(value), 0)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._record("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._record(
            "warning",
            message,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._record(
            "error",
            message,
            errors=list(errors or [message]),
            rc=rc,
            context=context,
        )

    def _record(
        self,
        status: str,
        message: str,
        *,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        changed: int | None = None,
        backups: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, Any] = {"status": status, "message": message}
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if changed is not None:
            result["changed"] = changed
        if backups:
            result["backups"] = list(backups)
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(dict(context))
        self.result = result


class StructuredLogger:
    """Append operation records to the JSONL operations log."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable logging when it cannot be created."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Operations log disabled; cannot create %s: %s", self._log_dir, exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSONL operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield a scope for *command* and write its record on exit."""
        scope = OperationScope(
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
            op_id=secrets.token_hex(6),
            started_at=_now_iso(),
            _started=time.monotonic(),
        )
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None or scope.result.get("status") != "error":
                scope.error(f"{type(exc).__name__}: {exc}")
            self._write(scope)
            raise
        if scope.result is None:
            scope.success("Completed.")
        self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record: dict[str, Any] = {
            "ts": scope.started_at,
            "op_id": scope.op_id,
            "command": scope.command,
            "args": _sanitize(scope.args),
            "target": _sanitize(scope.target),
            "pid": os.getpid(),
            "duration_ms": int((time.monotonic() - scope._started) * 1000),
            "result": scope.result,
        }
        if scope.lock_wait_ms is not None:
            record["lock_wait_ms"] = scope.lock_wait_ms
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError as exc:
            LOGGER.warning("Operations log disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]

"""Broker operations: provision, bind, unbind, deprovision and backup.

Each operation returns a :class:`BrokerResponse` carrying the status code and
JSON body an HTTP layer would serve. Mutating operations run under
:class:`~redisbroker.locking.LockManager` locks: provisioning holds the global
lock plus the instance lock, so the existence check, the capacity check and
the setup form a single critical section on this node.
"""
from __future__ import annotations

import json
import logging
import secrets
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .backups import (
    BackupEntryBuilder,
    BackupError,
    BackupsRegistry,
    RedisSnapshotter,
    Snapshotter,
    generate_identifier,
)
from .config import AppConfig
from .errors import (
    BrokerError,
    CapacityExceededError,
    CorruptStateError,
    InstanceAlreadyExistsError,
    InstanceNotFoundError,
    InvalidInstanceIdError,
    PidFileError,
    ProcessGoneError,
    UnknownPlanError,
)
from .instance import Instance
from .layout import InstanceLayout, validate_instance_id
from .locking import LockError, LockManager
from .logging import OperationScope, StructuredLogger
from .ports import PortAllocationError, PortAllocator
from .providers.process import ProcessController
from .repository import LocalRepository

LOGGER = logging.getLogger(__name__)

INSTANCE_NOT_FOUND_DESCRIPTION = "instance does not exist"
PASSWORD_BYTES = 24

SnapshotterFactory = Callable[[Instance, Path, str], Snapshotter]

_FAILURES: tuple[type[Exception], ...] = (
    BrokerError,
    BackupError,
    LockError,
    PortAllocationError,
)


@dataclass(frozen=True)
class BrokerResponse:
    """Status code and JSON body for one broker operation."""

    status: int
    body: Mapping[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Return whether the status signals success."""
        return self.status < 300

    def to_json(self) -> str:
        """Return the body serialised as JSON."""
        return json.dumps(dict(self.body), sort_keys=True, separators=(",", ":"))


@dataclass(slots=True)
class Broker:
    """Coordinate the repository and process controller for broker requests."""

    config: AppConfig
    repository: LocalRepository
    controller: ProcessController
    ports: PortAllocator
    locks: LockManager
    logger: StructuredLogger
    backups: BackupsRegistry
    snapshotter_factory: SnapshotterFactory | None = None

    @classmethod
    def from_config(cls, config: AppConfig) -> Broker:
        """Wire the default collaborators for *config*."""
        layout = InstanceLayout(data_root=config.redis.data_dir, log_root=config.redis.log_dir)
        repository = LocalRepository(
            layout=layout,
            host=config.redis.host,
            default_config_path=config.redis.default_config_path,
        )
        controller = ProcessController(
            informer=repository,
            executable=config.redis.executable,
        )
        ports = PortAllocator(
            used_ports=repository.used_ports,
            base_port=config.ports.base,
            strategy=config.ports.strategy,
        )
        return cls(
            config=config,
            repository=repository,
            controller=controller,
            ports=ports,
            locks=LockManager(config.runtime_dir, config.lock_timeout),
            logger=StructuredLogger(config.logs_dir),
            backups=BackupsRegistry(config.backups.root, config.backups.index),
        )

    @property
    def layout(self) -> InstanceLayout:
        """Return the repository's path layout."""
        return self.repository.layout

    # Provisioning -----------------------------------------------------
    def provision(self, instance_id: str, plan: str) -> BrokerResponse:
        """Create and start a new instance on *plan*."""
        with self.logger.operation(
            "provision",
            args={"plan": plan},
            target={"kind": "instance", "id": instance_id},
        ) as op:
            try:
                validate_instance_id(instance_id)
                with self.locks.mutate_instances([instance_id]) as bundle:
                    op.set_lock_wait_ms(bundle.wait_ms)
                    instance = self._provision_locked(instance_id, plan)
            except _FAILURES as exc:
                return self._failure(op, exc, instance_id)
            op.success(
                "Instance provisioned.",
                changed=1,
                context={"instance_id": instance.id, "port": instance.port, "plan": plan},
            )
            return BrokerResponse(201, {})

    def _provision_locked(self, instance_id: str, plan: str) -> Instance:
        service = self.config.service
        if plan not in (service.shared_plan, service.dedicated_plan):
            raise UnknownPlanError(plan)
        if self.repository.instance_exists(instance_id):
            raise InstanceAlreadyExistsError(instance_id)
        if plan == service.shared_plan:
            if self.repository.instance_count() >= service.max_instances:
                raise CapacityExceededError(service.max_instances)

        instance = Instance(
            id=instance_id,
            host=self.config.redis.host,
            port=self.ports.allocate(),
            password=secrets.token_urlsafe(PASSWORD_BYTES),
        )
        self.repository.setup(instance)
        self.controller.start_and_wait_until_ready(
            instance,
            str(self.layout.config_path(instance_id)),
            str(self.layout.data_dir(instance_id)),
            str(self.layout.pid_file_path(instance_id)),
            str(self.layout.log_file_path(instance_id)),
            self.config.redis.start_timeout,
        )
        # The marker only outlives a provision that failed part way.
        self.repository.unlock(instance)
        return instance

    # Bindings ---------------------------------------------------------
    def bind(self, instance_id: str, binding_id: str) -> BrokerResponse:
        """Issue credentials for *instance_id*."""
        with self.logger.operation(
            "bind",
            args={"binding_id": binding_id},
            target={"kind": "instance", "id": instance_id},
        ) as op:
            try:
                validate_instance_id(instance_id)
                credentials = self.repository.bind(instance_id, binding_id)
            except _FAILURES as exc:
                return self._failure(op, exc, instance_id)
            op.success("Credentials issued.", changed=0)
            return BrokerResponse(201, {"credentials": credentials.to_dict()})

    def unbind(self, instance_id: str, binding_id: str) -> BrokerResponse:
        """Release a binding; shared instances keep no per-binding state."""
        with self.logger.operation(
            "unbind",
            args={"binding_id": binding_id},
            target={"kind": "instance", "id": instance_id},
        ) as op:
            try:
                validate_instance_id(instance_id)
                if not self.repository.instance_exists(instance_id):
                    raise InstanceNotFoundError(instance_id)
                self.repository.unbind(instance_id, binding_id)
            except _FAILURES as exc:
                return self._failure(op, exc, instance_id)
            op.success("Binding released.", changed=0)
            return BrokerResponse(200, {})

    # Deprovisioning ---------------------------------------------------
    def deprovision(self, instance_id: str) -> BrokerResponse:
        """Kill the instance's process and remove its directories."""
        with self.logger.operation(
            "deprovision",
            target={"kind": "instance", "id": instance_id},
        ) as op:
            warnings: list[str] = []
            try:
                validate_instance_id(instance_id)
                with self.locks.mutate_instances([instance_id], include_global=False) as bundle:
                    op.set_lock_wait_ms(bundle.wait_ms)
                    if not self.repository.instance_exists(instance_id):
                        op.error("Instance does not exist.", rc=410)
                        return BrokerResponse(410, {})
                    warnings = self._deprovision_locked(instance_id)
            except _FAILURES as exc:
                return self._failure(op, exc, instance_id)
            if warnings:
                op.warning("Instance deprovisioned with warnings.", warnings=warnings, changed=1)
            else:
                op.success("Instance deprovisioned.", changed=1)
            return BrokerResponse(200, {})

    def _deprovision_locked(self, instance_id: str) -> list[str]:
        warnings: list[str] = []
        try:
            instance = self.repository.find_by_id(instance_id)
        except (InstanceNotFoundError, CorruptStateError) as exc:
            # Partially set up; only the id is needed to locate the pid file.
            warnings.append(str(exc))
            instance = Instance(id=instance_id, host=self.config.redis.host, port=0)
        try:
            self.controller.kill(instance)
        except (PidFileError, ProcessGoneError) as exc:
            LOGGER.warning("Instance %s has no running process: %s", instance_id, exc)
            warnings.append(str(exc))
        self.repository.delete(instance_id)
        return warnings

    # Supervision ------------------------------------------------------
    def ensure_all_running(self) -> BrokerResponse:
        """Start every known instance whose process is not alive."""
        with self.logger.operation("ensure-running", target={"kind": "instances"}) as op:
            try:
                instances = self.repository.all_instances()
            except _FAILURES as exc:
                return self._failure(op, exc, None)

            results: dict[str, str] = {}
            errors: list[str] = []
            for instance in instances:
                try:
                    with self.locks.mutate_instances([instance.id], include_global=False):
                        started = self.controller.ensure_running(
                            instance,
                            str(self.layout.config_path(instance.id)),
                            str(self.layout.data_dir(instance.id)),
                            str(self.layout.pid_file_path(instance.id)),
                            str(self.layout.log_file_path(instance.id)),
                        )
                except _FAILURES as exc:
                    results[instance.id] = f"error: {exc}"
                    errors.append(f"{instance.id}: {exc}")
                    continue
                results[instance.id] = "started" if started else "running"

            started_count = sum(1 for value in results.values() if value == "started")
            if errors:
                op.error("Some instances could not be started.", errors=errors, rc=500)
                return BrokerResponse(
                    500,
                    {"description": "some instances could not be started", "instances": results},
                )
            op.success("Instances reconciled.", changed=started_count)
            return BrokerResponse(200, {"instances": results})

    def list_instances(self) -> BrokerResponse:
        """Describe every instance in the pool (without passwords)."""
        with self.logger.operation("instances list", target={"kind": "instances"}) as op:
            try:
                instances = self.repository.all_instances()
                payload = [
                    {
                        "id": instance.id,
                        "host": instance.host,
                        "port": instance.port,
                        "locked": self.repository.is_locked(instance.id),
                    }
                    for instance in instances
                ]
            except _FAILURES as exc:
                return self._failure(op, exc, None)
            op.success("Reported instances.", changed=0)
            return BrokerResponse(
                200,
                {
                    "instances": payload,
                    "count": len(payload),
                    "max_instances": self.config.service.max_instances,
                },
            )

    # Backups ----------------------------------------------------------
    def backup(self, instance_id: str) -> BrokerResponse:
        """Snapshot *instance_id* and record the artifact in the backup index."""
        with self.logger.operation(
            "backup create",
            target={"kind": "instance", "id": instance_id},
        ) as op:
            try:
                validate_instance_id(instance_id)
                with self.locks.mutate_instances([instance_id], include_global=False) as bundle:
                    op.set_lock_wait_ms(bundle.wait_ms)
                    instance = self.repository.find_by_id(instance_id)
                    backup_id = generate_identifier(instance_id)
                    snapshotter = self._snapshotter(
                        instance, self.backups.archive_directory(instance_id), backup_id
                    )
                    artifact = snapshotter.snapshot()
                    entry = BackupEntryBuilder(artifact).build(backup_id=backup_id)
                    self.backups.append(entry)
            except _FAILURES as exc:
                return self._failure(op, exc, instance_id)
            op.success("Backup created.", changed=1, backups=[backup_id])
            return BrokerResponse(201, {"backup": entry})

    def _snapshotter(self, instance: Instance, destination: Path, backup_id: str) -> Snapshotter:
        if self.snapshotter_factory is not None:
            return self.snapshotter_factory(instance, destination, backup_id)
        return RedisSnapshotter(
            instance=instance,
            destination_dir=destination,
            timeout=self.config.backups.bgsave_timeout,
            backup_id=backup_id,
        )

    # ------------------------------------------------------------------
    def _failure(
        self,
        op: OperationScope,
        exc: Exception,
        instance_id: str | None,
    ) -> BrokerResponse:
        response = error_response(exc)
        context: dict[str, object] = {"error_type": type(exc).__name__}
        if instance_id is not None:
            context["instance_id"] = instance_id
        path = getattr(exc, "path", None)
        if path is not None:
            context["path"] = path
        op.error(str(exc), rc=response.status, context=context)
        return response


def error_response(exc: Exception) -> BrokerResponse:
    """Translate a lifecycle failure into its response."""
    if isinstance(exc, InstanceAlreadyExistsError):
        return BrokerResponse(409, {})
    if isinstance(exc, InstanceNotFoundError):
        return BrokerResponse(404, {"description": INSTANCE_NOT_FOUND_DESCRIPTION})
    if isinstance(exc, (UnknownPlanError, InvalidInstanceIdError)):
        return BrokerResponse(400, {"description": str(exc)})
    return BrokerResponse(500, {"description": str(exc)})


__all__ = ["Broker", "BrokerResponse", "INSTANCE_NOT_FOUND_DESCRIPTION", "error_response"]

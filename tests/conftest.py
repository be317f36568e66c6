"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from redisbroker.broker import Broker
from redisbroker.config import AppConfig, load_config
from redisbroker.providers import ProcessController


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass
class FakeCommandRunner:
    """Records commands instead of executing them."""

    commands: list[list[str]] = field(default_factory=list)
    error: Exception | None = None

    def run(self, args: Sequence[str]) -> None:
        self.commands.append(list(args))
        if self.error is not None:
            raise self.error


@dataclass
class FakeWaiter:
    """Connectability waiter that records calls and optionally fails."""

    calls: list[tuple[tuple[str, int], float]] = field(default_factory=list)
    error: Exception | None = None

    def __call__(self, address: tuple[str, int], timeout: float) -> None:
        self.calls.append((address, timeout))
        if self.error is not None:
            raise self.error


@dataclass
class FakeProcessChecker:
    alive_pids: set[int] = field(default_factory=set)
    checked: list[int] = field(default_factory=list)

    def alive(self, pid: int) -> bool:
        self.checked.append(pid)
        return pid in self.alive_pids


@dataclass
class FakeProcessKiller:
    killed: list[int] = field(default_factory=list)
    error: Exception | None = None

    def kill(self, pid: int) -> None:
        if self.error is not None:
            raise self.error
        self.killed.append(pid)


@dataclass
class FakeProcess:
    """Bundle of fakes wired into a broker's process controller."""

    runner: FakeCommandRunner
    waiter: FakeWaiter
    checker: FakeProcessChecker
    killer: FakeProcessKiller


def make_config(tmp_path: Path, **overrides: object) -> AppConfig:
    """Return a config rooted under *tmp_path* with *overrides* merged in."""
    values: dict[str, object] = {
        "state_dir": str(tmp_path / "state"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
    }
    values.update(overrides)
    return load_config(config_file=tmp_path / "absent.yml", env={}, overrides=values)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Config with a shared pool limited to three instances."""
    return make_config(tmp_path, service={"max_instances": 3})


@pytest.fixture
def fake_process() -> FakeProcess:
    return FakeProcess(
        runner=FakeCommandRunner(),
        waiter=FakeWaiter(),
        checker=FakeProcessChecker(),
        killer=FakeProcessKiller(),
    )


@pytest.fixture
def broker(app_config: AppConfig, fake_process: FakeProcess) -> Broker:
    """Broker whose process controller never launches a real server."""
    instance = Broker.from_config(app_config)
    instance.controller = ProcessController(
        informer=instance.repository,
        command_runner=fake_process.runner,
        process_checker=fake_process.checker,
        process_killer=fake_process.killer,
        wait_until_connectable=fake_process.waiter,
        executable=app_config.redis.executable,
    )
    return instance


@pytest.fixture
def config_factory(tmp_path: Path):
    """Return a callable building configs under *tmp_path* with overrides."""

    def _factory(**overrides: object) -> AppConfig:
        return make_config(tmp_path, **overrides)

    return _factory

"""End-to-end lifecycle against a real ``redis-server`` binary."""
from __future__ import annotations

import shutil
import socket
import time
from collections.abc import Iterator
from pathlib import Path

import pytest
import redis

from redisbroker.broker import Broker
from redisbroker.providers import OSProcessChecker

REDIS_SERVER = shutil.which("redis-server")

pytestmark = [
    pytest.mark.mutation_timeout,
    pytest.mark.skipif(REDIS_SERVER is None, reason="redis-server is not installed"),
]


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture
def live_broker(config_factory) -> Iterator[Broker]:
    config = config_factory(
        redis={"executable": REDIS_SERVER},
        ports={"base": _free_port()},
        service={"max_instances": 3},
    )
    broker = Broker.from_config(config)
    yield broker
    for instance in broker.repository.all_instances():
        broker.deprovision(instance.id)


def test_provision_bind_backup_deprovision(live_broker: Broker) -> None:
    """A provisioned server accepts authenticated clients until it is removed."""
    assert live_broker.provision("e2e", "shared").status == 201

    layout = live_broker.layout
    log_file = layout.log_file_path("e2e")
    assert _wait_for(
        lambda: log_file.exists()
        and "Ready to accept connections" in log_file.read_text(encoding="utf-8")
    )

    credentials = live_broker.bind("e2e", "b1").body["credentials"]
    client = redis.Redis(
        host=credentials["host"], port=credentials["port"], password=credentials["password"]
    )
    try:
        assert client.ping() is True
        client.set("greeting", "hello")
    finally:
        client.close()

    backup = live_broker.backup("e2e")
    assert backup.status == 201
    assert Path(backup.body["backup"]["path"]).stat().st_size > 0

    assert _wait_for(lambda: live_broker.layout.pid_file_path("e2e").exists())
    pid = live_broker.repository.instance_pid("e2e")
    assert live_broker.deprovision("e2e").status == 200
    assert _wait_for(lambda: not OSProcessChecker().alive(pid) or _is_zombie(pid))
    assert not layout.base_dir("e2e").exists()
    assert not layout.log_dir("e2e").exists()


def test_ensure_running_restarts_killed_server(live_broker: Broker) -> None:
    assert live_broker.provision("e2e", "shared").status == 201
    instance = live_broker.repository.find_by_id("e2e")
    assert _wait_for(lambda: live_broker.layout.pid_file_path("e2e").exists())
    pid = live_broker.repository.instance_pid("e2e")

    live_broker.controller.kill(instance)
    assert _wait_for(lambda: not OSProcessChecker().alive(pid) or _is_zombie(pid))

    response = live_broker.ensure_all_running()

    assert response.body["instances"] == {"e2e": "started"}
    assert _wait_for(lambda: live_broker.repository.instance_pid("e2e") != pid)


def _is_zombie(pid: int) -> bool:
    status = Path(f"/proc/{pid}/status")
    try:
        return "State:\tZ" in status.read_text(encoding="utf-8")
    except OSError:
        return False

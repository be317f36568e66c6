"""Configuration loader for redisbroker.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/redisbroker/config.yml`` (or an override path).
3. Environment variables prefixed with ``REDISBROKER_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export REDISBROKER_SERVICE__MAX_INSTANCES=3
    export REDISBROKER_REDIS__HOST=10.0.0.5

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load redisbroker configuration. Install with "
        "`pip install redisbroker` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "REDISBROKER_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RedisConfig:
    """Where instances live and how their servers are launched."""

    host: str
    data_dir: Path
    log_dir: Path
    default_config_path: Path | None = None
    executable: str = "redis-server"
    start_timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host": self.host,
            "data_dir": str(self.data_dir),
            "log_dir": str(self.log_dir),
            "default_config_path": (
                str(self.default_config_path) if self.default_config_path else None
            ),
            "executable": self.executable,
            "start_timeout": self.start_timeout,
        }


@dataclass(frozen=True)
class ServiceConfig:
    """Plan names and the shared pool capacity."""

    max_instances: int = 100
    shared_plan: str = "shared"
    dedicated_plan: str = "dedicated"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "max_instances": self.max_instances,
            "shared_plan": self.shared_plan,
            "dedicated_plan": self.dedicated_plan,
        }


@dataclass(frozen=True)
class PortsConfig:
    """Port allocation defaults."""

    base: int = 32768
    strategy: str = "sequential"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"base": self.base, "strategy": self.strategy}


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage defaults."""

    root: Path
    index: Path
    bgsave_timeout: float = 60.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "index": str(self.index),
            "bgsave_timeout": self.bgsave_timeout,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for redisbroker."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    redis: RedisConfig
    service: ServiceConfig
    ports: PortsConfig
    backups: BackupConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "redis": self.redis.to_dict(),
            "service": self.service.to_dict(),
            "ports": self.ports.to_dict(),
            "backups": self.backups.to_dict(),
        }


DEFAULTS: dict[str, Any] = {
    "config_file": "/etc/redisbroker/config.yml",
    "state_dir": "/var/lib/redisbroker",
    "logs_dir": "/var/log/redisbroker",
    "runtime_dir": "/run/redisbroker",
    "lock_timeout": 30.0,
    "redis": {
        "host": "127.0.0.1",
        "data_dir": None,  # <state_dir>/instances
        "log_dir": None,  # <logs_dir>/instances
        "default_config_path": None,
        "executable": "redis-server",
        "start_timeout": 10.0,
    },
    "service": {
        "max_instances": 100,
        "shared_plan": "shared",
        "dedicated_plan": "dedicated",
    },
    "ports": {
        "base": 32768,
        "strategy": "sequential",
    },
    "backups": {
        "root": None,  # <state_dir>/backups
        "index": None,  # <root>/backups.json
        "bgsave_timeout": 60.0,
    },
}

TOP_LEVEL_KEYS = frozenset(DEFAULTS)
SECTION_KEYS: dict[str, frozenset[str]] = {
    name: frozenset(value) for name, value in DEFAULTS.items() if isinstance(value, Mapping)
}
PORT_STRATEGIES = ("sequential",)


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Merge defaults, the YAML file, ``REDISBROKER_*`` variables and *overrides*.

    Later sources win key by key; nested sections merge rather than replace.
    """
    environ = os.environ if env is None else env
    if config_file:
        config_path = Path(config_file)
    else:
        config_path = Path(environ.get(CONFIG_ENV_VAR) or DEFAULTS["config_file"])

    merged: dict[str, Any] = {}
    for layer in (DEFAULTS, _read_yaml(config_path), _env_layer(environ), overrides or {}):
        _merge_into(merged, layer, "config")
    merged["config_file"] = str(config_path)

    unknown = set(merged) - TOP_LEVEL_KEYS
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}.")
    return _build(merged)


def _read_yaml(path: Path) -> Mapping[str, object]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return data


def _env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    """Turn ``REDISBROKER_A__B=value`` variables into ``{"a": {"b": value}}``."""
    layer: dict[str, Any] = {}
    for key, raw in environ.items():
        if not key.startswith(ENV_PREFIX) or key in RESERVED_ENV_KEYS:
            continue
        parts = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not parts:
            continue
        node = layer
        for part in parts[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(f"{key} conflicts with another {ENV_PREFIX} variable.")
            node = child
        if isinstance(node.get(parts[-1]), dict):
            raise ConfigError(f"{key} conflicts with another {ENV_PREFIX} variable.")
        node[parts[-1]] = _parse_scalar(raw)
    return layer


def _parse_scalar(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:  # pragma: no cover - keep the literal string
        return text


def _merge_into(target: dict[str, Any], layer: Mapping[str, object], label: str) -> None:
    for key, value in layer.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        if isinstance(value, Mapping):
            child = target.get(key)
            if not isinstance(child, dict):
                child = {}
                target[key] = child
            _merge_into(child, value, f"{label}.{key}")
        else:
            target[key] = value


@dataclass(frozen=True)
class _Section:
    """Typed accessors over one merged mapping, labelling errors by key path."""

    name: str
    values: Mapping[str, object]

    @classmethod
    def of(cls, merged: Mapping[str, object], name: str) -> _Section:
        value = merged.get(name)
        if value is None:
            value = {}
        if not isinstance(value, Mapping):
            raise ConfigError(f"Expected {name} to be a mapping. Got {type(value).__name__}.")
        unknown = set(value) - SECTION_KEYS[name]
        if unknown:
            raise ConfigError(
                f"Unknown {name} configuration keys: {', '.join(sorted(unknown))}."
            )
        return cls(name, value)

    def label(self, key: str) -> str:
        return f"{self.name}.{key}" if self.name else key

    def raw(self, key: str) -> object:
        value = self.values.get(key)
        return DEFAULTS_LOOKUP.get(self.label(key)) if value is None else value

    def text(self, key: str) -> str:
        value = str(self.raw(key) or "").strip()
        if not value:
            raise ConfigError(f"{self.label(key)} must be a non-empty string.")
        return value

    def path(self, key: str) -> Path | None:
        value = self.values.get(key)
        if value is None or value == "":
            return None
        if isinstance(value, (str, Path)):
            return Path(value).expanduser()
        raise ConfigError(f"Cannot convert {self.label(key)}={value!r} to a path.")

    def integer(self, key: str) -> int:
        value = self.raw(key)
        if isinstance(value, bool):
            raise ConfigError(f"Expected {self.label(key)} to be an integer. Got {value!r}.")
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            try:
                return int(value, 0)
            except ValueError as exc:
                raise ConfigError(f"Invalid integer for {self.label(key)}: {value!r}.") from exc
        raise ConfigError(
            f"Expected {self.label(key)} to be an integer. Got {type(value).__name__}."
        )

    def positive(self, key: str) -> float:
        value = self.raw(key)
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ConfigError(f"Expected {self.label(key)} to be a number. Got {value!r}.")
        try:
            number = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {self.label(key)}: {value!r}.") from exc
        if number <= 0:
            raise ConfigError(f"{self.label(key)} must be greater than zero. Got {number:g}.")
        return number


def _flatten_defaults(tree: Mapping[str, object], prefix: str = "") -> dict[str, object]:
    flat: dict[str, object] = {}
    for key, value in tree.items():
        label = f"{prefix}.{key}" if prefix else key
        if isinstance(value, Mapping):
            flat.update(_flatten_defaults(value, label))
        else:
            flat[label] = value
    return flat


DEFAULTS_LOOKUP = _flatten_defaults(DEFAULTS)


def _build(merged: Mapping[str, object]) -> AppConfig:
    top = _Section("", {key: value for key, value in merged.items() if key not in SECTION_KEYS})
    state_dir = top.path("state_dir") or Path(DEFAULTS["state_dir"])
    logs_dir = top.path("logs_dir") or Path(DEFAULTS["logs_dir"])

    redis_section = _Section.of(merged, "redis")
    redis = RedisConfig(
        host=redis_section.text("host"),
        data_dir=redis_section.path("data_dir") or state_dir / "instances",
        log_dir=redis_section.path("log_dir") or logs_dir / "instances",
        default_config_path=redis_section.path("default_config_path"),
        executable=redis_section.text("executable"),
        start_timeout=redis_section.positive("start_timeout"),
    )

    service_section = _Section.of(merged, "service")
    max_instances = service_section.integer("max_instances")
    if max_instances < 0:
        raise ConfigError(f"service.max_instances must be non-negative. Got {max_instances}.")
    service = ServiceConfig(
        max_instances=max_instances,
        shared_plan=service_section.text("shared_plan"),
        dedicated_plan=service_section.text("dedicated_plan"),
    )
    if service.shared_plan == service.dedicated_plan:
        raise ConfigError("service.shared_plan and service.dedicated_plan must differ.")

    ports_section = _Section.of(merged, "ports")
    base_port = ports_section.integer("base")
    if not 1 <= base_port <= 65535:
        raise ConfigError(f"ports.base must be between 1 and 65535. Got {base_port}.")
    strategy = ports_section.text("strategy")
    if strategy not in PORT_STRATEGIES:
        raise ConfigError(
            f"Unsupported port allocation strategy '{strategy}'. "
            f"Allowed: {', '.join(PORT_STRATEGIES)}."
        )

    backups_section = _Section.of(merged, "backups")
    backups_root = backups_section.path("root") or state_dir / "backups"
    backups = BackupConfig(
        root=backups_root,
        index=backups_section.path("index") or backups_root / "backups.json",
        bgsave_timeout=backups_section.positive("bgsave_timeout"),
    )

    return AppConfig(
        config_file=top.path("config_file") or Path(DEFAULTS["config_file"]),
        state_dir=state_dir,
        logs_dir=logs_dir,
        runtime_dir=top.path("runtime_dir") or Path(DEFAULTS["runtime_dir"]),
        lock_timeout=top.positive("lock_timeout"),
        redis=redis,
        service=service,
        ports=PortsConfig(base=base_port, strategy=strategy),
        backups=backups,
    )


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "PortsConfig",
    "RedisConfig",
    "ServiceConfig",
    "load_config",
]

"""Read and write ``redis.conf`` documents.

A document is an ordered list of directives (``name value...``). Directive
names may repeat (``save 900 1`` / ``save 300 10``); :meth:`RedisConf.get`
returns the first value and :meth:`RedisConf.set` replaces the first
occurrence in place or appends a new directive. Comments and blank lines are
not preserved. Empty values are written as ``""``, which Redis reads as an
empty argument.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

# Used when no template path is configured.
BUILTIN_TEMPLATE: tuple[tuple[str, str], ...] = (
    ("daemonize", "yes"),
    ("timeout", "0"),
    ("loglevel", "notice"),
    ("databases", "16"),
    ("save", "900 1"),
    ("save", "300 10"),
    ("save", "60 10000"),
    ("dbfilename", "dump.rdb"),
    ("appendonly", "no"),
)


_EMPTY = '""'


class RedisConfError(RuntimeError):
    """Raised when a redis.conf document cannot be read or written."""


def _unquote(value: str) -> str:
    return "" if value == _EMPTY else value


@dataclass(slots=True)
class Directive:
    """One ``name value`` line."""

    name: str
    value: str

    def render(self) -> str:
        """Return the directive as a config line."""
        return f"{self.name} {self.value or _EMPTY}"


@dataclass(slots=True)
class RedisConf:
    """An ordered collection of directives."""

    directives: list[Directive] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> RedisConf:
        """Parse *text* into a document."""
        directives: list[Directive] = []
        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            name, _, value = line.partition(" ")
            directives.append(Directive(name=name.lower(), value=_unquote(value.strip())))
        return cls(directives)

    @classmethod
    def load(cls, path: Path) -> RedisConf:
        """Read the document stored at *path*."""
        return cls.parse(path.read_text(encoding="utf-8"))

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, str]]) -> RedisConf:
        """Build a document from ``(name, value)`` pairs."""
        return cls([Directive(name=name.lower(), value=value) for name, value in pairs])

    def __iter__(self) -> Iterator[Directive]:
        return iter(self.directives)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and any(
            directive.name == name.lower() for directive in self.directives
        )

    def get(self, name: str, default: str = "") -> str:
        """Return the first value for *name*, or *default*."""
        key = name.lower()
        for directive in self.directives:
            if directive.name == key:
                return directive.value
        return default

    def get_all(self, name: str) -> list[str]:
        """Return every value recorded for *name* in order."""
        key = name.lower()
        return [directive.value for directive in self.directives if directive.name == key]

    def set(self, name: str, value: str) -> None:
        """Replace the first *name* directive, or append one."""
        key = name.lower()
        for directive in self.directives:
            if directive.name == key:
                directive.value = value
                return
        self.directives.append(Directive(name=key, value=value))

    def render(self) -> str:
        """Return the document as text."""
        return "".join(f"{directive.render()}\n" for directive in self.directives)

    def save(self, path: Path, *, mode: int = 0o640) -> None:
        """Atomically write the document to *path*."""
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(self.render())
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)


def copy_with_instance_additions(
    template_path: Path | None,
    destination: Path,
    *,
    instance_id: str,
    port: int,
    password: str,
) -> RedisConf:
    """Render *template_path* with instance overrides and save it to *destination*."""
    if template_path is None:
        document = RedisConf.from_pairs(BUILTIN_TEMPLATE)
    else:
        try:
            document = RedisConf.load(template_path)
        except OSError as exc:
            raise RedisConfError(f"Cannot read config template {template_path}: {exc}") from exc
    document.set("syslog-ident", f"redis-server-{instance_id}")
    document.set("port", str(port))
    document.set("requirepass", password)
    document.save(destination)
    return document


__all__ = [
    "BUILTIN_TEMPLATE",
    "Directive",
    "RedisConf",
    "RedisConfError",
    "copy_with_instance_additions",
]

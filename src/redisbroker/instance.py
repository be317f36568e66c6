"""Instance value objects."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class InstanceCredentials:
    """What a binding consumer needs to connect."""

    host: str
    port: int
    password: str

    def to_dict(self) -> dict[str, object]:
        """Return the credentials payload served to bindings."""
        return {"host": self.host, "port": self.port, "password": self.password}


@dataclass(frozen=True)
class Instance:
    """One provisioned Redis server."""

    id: str
    host: str
    port: int
    password: str = ""

    @property
    def address(self) -> tuple[str, int]:
        """Return the ``(host, port)`` pair the server listens on."""
        return (self.host, self.port)

    def credentials(self) -> InstanceCredentials:
        """Project the instance into binding credentials."""
        return InstanceCredentials(host=self.host, port=self.port, password=self.password)


__all__ = ["Instance", "InstanceCredentials"]

"""Port allocation for new instances."""
from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

MAX_PORT = 65535


class PortAllocationError(RuntimeError):
    """Raised when no port can be assigned."""


@dataclass(slots=True)
class PortAllocator:
    """Pick ports for new instances from the ports held by existing ones.

    *used_ports* is called on every allocation so the filesystem stays the
    only record of which ports are taken.
    """

    used_ports: Callable[[], Iterable[int]]
    base_port: int
    strategy: str = "sequential"

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if not 1 <= self.base_port <= MAX_PORT:
            raise PortAllocationError("Base port must be between 1 and 65535.")
        if self.strategy != "sequential":
            raise PortAllocationError(f"Unsupported port allocation strategy '{self.strategy}'.")

    def allocate(self) -> int:
        """Return the lowest free port at or above the base port."""
        return self._next_available_port(set(self.used_ports()))

    # Internal helpers -------------------------------------------------
    def _next_available_port(self, used: set[int]) -> int:
        candidate = self.base_port
        while candidate in used:
            candidate += 1
        if candidate > MAX_PORT:
            raise PortAllocationError(f"No free port left at or above {self.base_port}.")
        return candidate


__all__ = ["PortAllocationError", "PortAllocator"]

"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2
    PROVIDER = 4
    CONFLICT = 5
    NOT_FOUND = 6


def exit_code_for_status(status: int) -> ExitCode:
    """Map a broker response status to the CLI exit code."""
    if status < 300:
        return ExitCode.OK
    if status == 400:
        return ExitCode.VALIDATION
    if status in (404, 410):
        return ExitCode.NOT_FOUND
    if status == 409:
        return ExitCode.CONFLICT
    return ExitCode.PROVIDER

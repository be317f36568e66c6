"""Typer-powered command line for ``redisbroker``.

Every lifecycle command delegates to :class:`~redisbroker.broker.Broker`,
prints the response body as JSON and exits with the code mapped from the
response status (see :mod:`redisbroker.exit_codes`).
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupRegistryError
from .broker import Broker, BrokerResponse
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode, exit_code_for_status

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to redisbroker's YAML config file.",
)

PLAN_OPTION = typer.Option(
    "shared",
    "--plan",
    help="Service plan to provision (shared or dedicated by default).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Redis service broker CLI.

        Provision, bind, supervise, back up and remove Redis server instances
        on the local host.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    broker: Broker


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    runtime = RuntimeContext(config=config, broker=Broker.from_config(config))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the redisbroker version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.broker.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"redisbroker {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _emit(response: BrokerResponse) -> NoReturn:
    console.print_json(data=dict(response.body))
    raise typer.Exit(code=int(exit_code_for_status(response.status)))


# Lifecycle ------------------------------------------------------------
@app.command("provision")
def provision(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Identifier of the new instance."),
    plan: str = PLAN_OPTION,
) -> None:
    """Create and start a Redis instance."""
    runtime = _get_runtime(ctx)
    _emit(runtime.broker.provision(instance_id, plan))


@app.command("bind")
def bind(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Instance to bind to."),
    binding_id: str = typer.Argument(..., help="Identifier of the binding."),
) -> None:
    """Print connection credentials for an instance."""
    runtime = _get_runtime(ctx)
    _emit(runtime.broker.bind(instance_id, binding_id))


@app.command("unbind")
def unbind(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Instance the binding belongs to."),
    binding_id: str = typer.Argument(..., help="Identifier of the binding."),
) -> None:
    """Release a binding."""
    runtime = _get_runtime(ctx)
    _emit(runtime.broker.unbind(instance_id, binding_id))


@app.command("deprovision")
def deprovision(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Instance to remove."),
) -> None:
    """Stop an instance and delete its data and logs."""
    runtime = _get_runtime(ctx)
    _emit(runtime.broker.deprovision(instance_id))


instances_app = typer.Typer(help="Inspect and supervise provisioned instances.")
backups_app = typer.Typer(help="Create and list instance snapshots.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(instances_app, name="instance")
app.add_typer(backups_app, name="backup")
app.add_typer(config_app, name="config")


@instances_app.command("list")
def instance_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List instances with their ports."""
    runtime = _get_runtime(ctx)
    response = runtime.broker.list_instances()
    if json_output or not response.ok:
        _emit(response)

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Instance", style="bold")
    table.add_column("Host")
    table.add_column("Port")
    table.add_column("Locked")
    entries = response.body.get("instances", [])
    if not entries:
        table.add_row("(none)", "", "", "")
    for entry in entries:
        table.add_row(
            str(entry["id"]),
            str(entry["host"]),
            str(entry["port"]),
            "yes" if entry["locked"] else "no",
        )
    console.print(table)
    console.print(
        f"{response.body.get('count', 0)} of {response.body.get('max_instances', 0)} "
        "shared slots in use."
    )


@instances_app.command("ensure-running")
def instance_ensure_running(ctx: typer.Context) -> None:
    """Restart every instance whose process has died."""
    runtime = _get_runtime(ctx)
    _emit(runtime.broker.ensure_all_running())


@backups_app.command("create")
def backup_create(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Instance to snapshot."),
) -> None:
    """Snapshot an instance into the backup root."""
    runtime = _get_runtime(ctx)
    _emit(runtime.broker.backup(instance_id))


@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    instance: str | None = typer.Option(
        None,
        "--instance",
        help="Only list backups for this instance.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List recorded backups."""
    runtime = _get_runtime(ctx)
    registry = runtime.broker.backups
    with runtime.broker.logger.operation(
        "backup list",
        args={"instance": instance, "json": json_output},
        target={"kind": "backups"},
    ) as op:
        try:
            if instance:
                entries = registry.entries_for_instance(instance)
            else:
                entries = registry.list_entries()
        except BackupRegistryError as exc:
            op.error(str(exc), rc=int(ExitCode.PROVIDER))
            err_console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=int(ExitCode.PROVIDER)) from exc

        if json_output:
            console.print_json(data={"backups": entries})
            op.success("Reported backups as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Backup", style="bold")
        table.add_column("Instance")
        table.add_column("Created")
        table.add_column("Size")
        table.add_column("Status")
        if not entries:
            table.add_row("(none)", "", "", "", "")
        for entry in entries:
            table.add_row(
                str(entry.get("id", "")),
                str(entry.get("instance", "")),
                str(entry.get("created_at", "")),
                str(entry.get("size_bytes", "")),
                str(entry.get("status", "")),
            )
        console.print(table)
        op.success("Rendered backups table.", changed=0)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.broker.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            table.add_row(key, _render_value(value))
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def _render_value(value: Any) -> str:
    if isinstance(value, Mapping):
        return json.dumps(dict(value), indent=2, sort_keys=True)
    return str(value)


def main() -> None:  # pragma: no cover - thin wrapper for console_scripts
    """Invoke the Typer application."""
    app()


__all__ = ["RuntimeContext", "app", "main"]

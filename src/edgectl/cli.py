"""Typer command line for ``edgectl``.

Commands are grouped by what they manage: ``site`` and ``stream`` units,
the ``system`` (reload, status, backup, restore), the ``backup`` index and
the effective ``config``. Every command runs inside a structured operation
scope; mutating commands report whether a failed change was rolled back and
exit with a code from :class:`~edgectl.exit_codes.ExitCode`.
"""
from __future__ import annotations

import json
import sys
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .archive import ArchiveError
from .backups import BackupError
from .config import AppConfig, ConfigError, load_config
from .engine import SITE, STREAM, Engine
from .exit_codes import ExitCode
from .locking import LockError
from .logging import OperationScope
from .models import SiteConfig, StreamConfig
from .providers import NginxError
from .restore import RestoreOutcome, RestoreResult
from .store import StoreError, UnitExistsError, UnitNotFoundError
from .templates import TemplateRenderError
from .transaction import MutationResult

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    "-c",
    help="Path to an alternate configuration file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)
RAW_FILE_OPTION = typer.Option(
    ...,
    "--file",
    "-f",
    help="File holding the new body ('-' reads standard input).",
)
SITE_TYPE_OPTION = typer.Option(
    "proxy",
    "--type",
    "-t",
    help="Site kind: proxy, static, lb or redirect.",
)
BACKEND_IP_OPTION = typer.Option("", "--backend-ip", help="Backend address (proxy sites).")
BACKEND_PORT_OPTION = typer.Option(0, "--backend-port", help="Backend port (proxy sites).")
BACKENDS_OPTION = typer.Option(
    None,
    "--backend",
    "-b",
    help="Upstream server host:port (lb sites, repeatable).",
)
TARGET_URL_OPTION = typer.Option("", "--target-url", help="Redirect target (redirect sites).")
LISTEN_PORT_OPTION = typer.Option(..., "--listen-port", "-p", help="Port the stream listens on.")
STREAM_TARGET_OPTION = typer.Option(..., "--target", help="Upstream host:port for the stream.")
BACKUP_SOURCE_OPTION = typer.Option(
    None,
    "--source",
    "-s",
    help="Directory to include instead of the managed roots (repeatable).",
)
BACKUP_MESSAGE_OPTION = typer.Option(None, "--message", "-m", help="Note stored in the index.")

SITE_COLUMNS = ["domain", "type", "backend_ip", "backend_port", "backends", "target_url", "enabled"]
STREAM_COLUMNS = ["name", "listen_port", "target", "enabled"]

app = typer.Typer(
    add_completion=False,
    help="Manage nginx sites, streams, backups and restores with automatic rollback.",
)
sites_app = typer.Typer(help="Manage HTTP site units.")
streams_app = typer.Typer(help="Manage TCP/UDP stream units.")
system_app = typer.Typer(help="Reload, inspect, back up and restore the nginx service.")
backups_app = typer.Typer(help="Inspect the backup index and restore indexed backups.")
config_app = typer.Typer(help="Inspect configuration.")

app.add_typer(sites_app, name="site")
app.add_typer(streams_app, name="stream")
app.add_typer(system_app, name="system")
app.add_typer(backups_app, name="backup")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    engine: Engine


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
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc

    runtime = RuntimeContext(config=config, engine=Engine.from_config(config))
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
        help="Show the edgectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override mutation lock timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"edgectl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


@contextmanager
def _guard(op: OperationScope) -> Iterator[None]:
    """Translate domain errors into CLI exit codes."""
    try:
        yield
    except (UnitNotFoundError, UnitExistsError, TemplateRenderError, ValueError) as exc:
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
    except LockError as exc:
        _command_error(
            op,
            f"Could not acquire the mutation lock: {exc}",
            rc=int(ExitCode.ENVIRONMENT),
        )
    except (StoreError, ArchiveError, BackupError) as exc:
        _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
    except NginxError as exc:
        _command_error(
            op,
            str(exc),
            rc=int(ExitCode.PROVIDER),
            errors=[exc.details],
        )


def _read_body(source: Path) -> str:
    if str(source) == "-":
        return sys.stdin.read()
    try:
        with source.open("r", encoding="utf-8", newline="") as handle:
            return handle.read()
    except OSError as exc:
        raise ValueError(f"Cannot read {source}: {exc}") from exc


def _report_mutation(result: MutationResult, *, json_output: bool) -> None:
    """Print *result* and exit with the matching code when it failed."""
    if json_output:
        console.print_json(data=result.to_dict())
    label = f"{result.action.value} '{result.unit_key}'"
    if result.committed:
        if not json_output:
            console.print(f"[green]{label} committed and nginx reloaded.[/green]")
        return
    if result.rolled_back:
        if not json_output:
            console.print(f"[red]{label} failed:[/red] {escape(result.detail)}")
            console.print("[yellow]rollback attempted: yes, rolled back: yes[/yellow]")
            if result.reload_after_rollback is False:
                console.print("[yellow]reload after rollback failed; check nginx status[/yellow]")
        raise typer.Exit(code=int(ExitCode.PROVIDER))
    if not json_output:
        console.print(f"[bold red]{label} failed and the rollback failed too.[/bold red]")
        console.print(f"[red]original failure:[/red] {escape(result.detail)}")
        console.print(f"[red]rollback error:[/red] {escape(str(result.rollback_error))}")
        console.print("[bold red]Live configuration may not match the store.[/bold red]")
    raise typer.Exit(code=int(ExitCode.FATAL))


def _render_units(rows: list[dict[str, object]], columns: Sequence[str]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    for index, column in enumerate(columns):
        table.add_column(column.replace("_", " ").title(), style="bold" if index == 0 else None)
    if not rows:
        table.add_row("(none)", *[""] * (len(columns) - 1))
    for row in rows:
        table.add_row(*[_format_cell(row.get(column)) for column in columns])
    console.print(table)


def _format_cell(value: object) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    if value in (None, "", 0):
        return ""
    if isinstance(value, list):
        return ", ".join(str(item) for item in value)
    return str(value)


def _render_details(data: dict[str, object]) -> None:
    table = Table(show_header=False)
    for key, value in data.items():
        rendered = _format_cell(value)
        if rendered:
            table.add_row(key.replace("_", " ").title(), rendered)
    console.print(table)


# ----------------------------------------------------------------------
# site
# ----------------------------------------------------------------------
@sites_app.command("list")
def site_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List sites with their parsed details."""
    runtime = _get_runtime(ctx)
    engine = runtime.engine
    with runtime.engine.logger.operation(
        "site list",
        args={"json": json_output},
        target={"kind": SITE, "scope": "store"},
    ) as op:
        with _guard(op):
            rows = []
            for site in engine.list_sites():
                row = site.to_dict()
                row["enabled"] = engine.sites.is_enabled(site.domain)
                rows.append(row)
        if json_output:
            console.print_json(data={"sites": rows})
        else:
            _render_units(rows, SITE_COLUMNS)
        op.success("Reported site list.", changed=0)


@sites_app.command("show")
def site_show(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain of the site."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the parsed parameters of a site."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "site show",
        args={"domain": domain, "json": json_output},
        target={"kind": SITE, "name": domain},
    ) as op:
        with _guard(op):
            data = runtime.engine.get_site(domain).to_dict()
            data["enabled"] = runtime.engine.sites.is_enabled(domain)
        if json_output:
            console.print_json(data=data)
        else:
            _render_details(data)
        op.success("Displayed site details.", changed=0)


@sites_app.command("raw")
def site_raw(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain of the site."),
) -> None:
    """Print the stored body of a site verbatim."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "site raw",
        args={"domain": domain},
        target={"kind": SITE, "name": domain},
    ) as op:
        with _guard(op):
            body = runtime.engine.read_site_raw(domain)
        typer.echo(body, nl=False)
        op.success("Printed site body.", changed=0)


def _site_from_options(
    domain: str,
    site_type: str,
    backend_ip: str,
    backend_port: int,
    backends: list[str] | None,
    target_url: str,
) -> SiteConfig:
    return SiteConfig.from_mapping(
        {
            "domain": domain,
            "type": site_type,
            "backend_ip": backend_ip,
            "backend_port": backend_port,
            "backends": backends or [],
            "target_url": target_url,
        }
    )


@sites_app.command("create")
def site_create(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain of the new site."),
    site_type: str = SITE_TYPE_OPTION,
    backend_ip: str = BACKEND_IP_OPTION,
    backend_port: int = BACKEND_PORT_OPTION,
    backends: list[str] | None = BACKENDS_OPTION,
    target_url: str = TARGET_URL_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Render, enable and commit a new site."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "site create",
        args={"domain": domain, "type": site_type, "json": json_output},
        target={"kind": SITE, "name": domain},
    ) as op:
        with _guard(op):
            site = _site_from_options(
                domain, site_type, backend_ip, backend_port, backends, target_url
            )
            result = runtime.engine.create_site(site, op=op)
        _report_mutation(result, json_output=json_output)


@sites_app.command("update")
def site_update(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain of the site."),
    site_type: str = SITE_TYPE_OPTION,
    backend_ip: str = BACKEND_IP_OPTION,
    backend_port: int = BACKEND_PORT_OPTION,
    backends: list[str] | None = BACKENDS_OPTION,
    target_url: str = TARGET_URL_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Re-render an existing site from new parameters."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "site update",
        args={"domain": domain, "type": site_type, "json": json_output},
        target={"kind": SITE, "name": domain},
    ) as op:
        with _guard(op):
            site = _site_from_options(
                domain, site_type, backend_ip, backend_port, backends, target_url
            )
            result = runtime.engine.update_site(site, op=op)
        _report_mutation(result, json_output=json_output)


@sites_app.command("edit-raw")
def site_edit_raw(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain of the site."),
    source: Path = RAW_FILE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Replace a site's body verbatim; rolled back byte-for-byte if nginx rejects it."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "site edit-raw",
        args={"domain": domain, "file": str(source), "json": json_output},
        target={"kind": SITE, "name": domain},
    ) as op:
        with _guard(op):
            body = _read_body(source)
            result = runtime.engine.edit_site_raw(domain, body, op=op)
        _report_mutation(result, json_output=json_output)


@sites_app.command("delete")
def site_delete(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain of the site."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Disable and remove a site."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "site delete",
        args={"domain": domain, "json": json_output},
        target={"kind": SITE, "name": domain},
    ) as op:
        with _guard(op):
            result = runtime.engine.delete_site(domain, op=op)
        _report_mutation(result, json_output=json_output)


# ----------------------------------------------------------------------
# stream
# ----------------------------------------------------------------------
@streams_app.command("list")
def stream_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List streams with their listen port and target."""
    runtime = _get_runtime(ctx)
    engine = runtime.engine
    with engine.logger.operation(
        "stream list",
        args={"json": json_output},
        target={"kind": STREAM, "scope": "store"},
    ) as op:
        with _guard(op):
            rows = []
            for stream in engine.list_streams():
                row = stream.to_dict()
                row["enabled"] = engine.streams.is_enabled(stream.name)
                rows.append(row)
        if json_output:
            console.print_json(data={"streams": rows})
        else:
            _render_units(rows, STREAM_COLUMNS)
        op.success("Reported stream list.", changed=0)


@streams_app.command("show")
def stream_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the stream."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the parsed parameters of a stream."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "stream show",
        args={"name": name, "json": json_output},
        target={"kind": STREAM, "name": name},
    ) as op:
        with _guard(op):
            data = runtime.engine.get_stream(name).to_dict()
            data["enabled"] = runtime.engine.streams.is_enabled(name)
        if json_output:
            console.print_json(data=data)
        else:
            _render_details(data)
        op.success("Displayed stream details.", changed=0)


@streams_app.command("raw")
def stream_raw(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the stream."),
) -> None:
    """Print the stored body of a stream verbatim."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "stream raw",
        args={"name": name},
        target={"kind": STREAM, "name": name},
    ) as op:
        with _guard(op):
            body = runtime.engine.read_stream_raw(name)
        typer.echo(body, nl=False)
        op.success("Printed stream body.", changed=0)


@streams_app.command("create")
def stream_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the new stream."),
    listen_port: int = LISTEN_PORT_OPTION,
    target: str = STREAM_TARGET_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Render, enable and commit a new stream."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "stream create",
        args={"name": name, "listen_port": listen_port, "target": target},
        target={"kind": STREAM, "name": name},
    ) as op:
        with _guard(op):
            stream = StreamConfig(name=name, listen_port=listen_port, target=target)
            result = runtime.engine.create_stream(stream, op=op)
        _report_mutation(result, json_output=json_output)


@streams_app.command("update")
def stream_update(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the stream."),
    listen_port: int = LISTEN_PORT_OPTION,
    target: str = STREAM_TARGET_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Re-render an existing stream from new parameters."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "stream update",
        args={"name": name, "listen_port": listen_port, "target": target},
        target={"kind": STREAM, "name": name},
    ) as op:
        with _guard(op):
            stream = StreamConfig(name=name, listen_port=listen_port, target=target)
            result = runtime.engine.update_stream(stream, op=op)
        _report_mutation(result, json_output=json_output)


@streams_app.command("edit-raw")
def stream_edit_raw(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the stream."),
    source: Path = RAW_FILE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Replace a stream's body verbatim and enable it."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "stream edit-raw",
        args={"name": name, "file": str(source), "json": json_output},
        target={"kind": STREAM, "name": name},
    ) as op:
        with _guard(op):
            body = _read_body(source)
            result = runtime.engine.edit_stream_raw(name, body, op=op)
        _report_mutation(result, json_output=json_output)


@streams_app.command("delete")
def stream_delete(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the stream."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Disable and remove a stream."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "stream delete",
        args={"name": name, "json": json_output},
        target={"kind": STREAM, "name": name},
    ) as op:
        with _guard(op):
            result = runtime.engine.delete_stream(name, op=op)
        _report_mutation(result, json_output=json_output)


# ----------------------------------------------------------------------
# system
# ----------------------------------------------------------------------
@system_app.command("reload")
def system_reload(ctx: typer.Context) -> None:
    """Validate the configuration with ``nginx -t`` and reload nginx."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "system reload",
        args={},
        target={"kind": "service", "name": runtime.config.nginx.service},
    ) as op:
        with _guard(op):
            runtime.engine.reload(op=op)
        console.print("[green]nginx configuration valid and reloaded.[/green]")


@system_app.command("status")
def system_status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report whether nginx is running, its version and config health."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "system status",
        args={"json": json_output},
        target={"kind": "service", "name": runtime.config.nginx.service},
    ) as op:
        status = runtime.engine.status()
        data = status.to_dict()
        if json_output:
            console.print_json(data=data)
        else:
            state = "[green]active[/green]" if status.active else "[red]inactive[/red]"
            health = "[green]ok[/green]" if status.config_valid else "[red]invalid[/red]"
            table = Table(show_header=False)
            table.add_row("Service", status.service)
            table.add_row("State", state)
            table.add_row("Version", status.version or "unknown")
            table.add_row("Config", health)
            if not status.config_valid:
                table.add_row("Detail", status.config_detail)
            console.print(table)
        op.success("Reported service status.", changed=0, context=data)


@system_app.command("backup")
def system_backup(
    ctx: typer.Context,
    sources: list[Path] | None = BACKUP_SOURCE_OPTION,
    message: str | None = BACKUP_MESSAGE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Archive the nginx configuration and content into the backups root."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "system backup",
        args={"sources": [str(item) for item in sources or []], "message": message},
        target={"kind": "backup", "root": str(runtime.config.backups.root)},
    ) as op:
        with _guard(op):
            archive = runtime.engine.backup(sources or None, message=message, op=op)
        if json_output:
            console.print_json(data=archive.to_dict())
        else:
            console.print(f"[green]Backup written to {archive.path}[/green]")


@system_app.command("restore")
def system_restore(
    ctx: typer.Context,
    source: Path = typer.Argument(
        ...,
        help="Archive to restore, or a directory whose newest archive is used.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Restore nginx configuration and content from a backup archive."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "system restore",
        args={"source": str(source), "json": json_output},
        target={"kind": "archive", "path": str(source)},
    ) as op:
        with _guard(op):
            result = runtime.engine.restore(source, op=op)
        _report_restore(result, json_output=json_output)


def _report_restore(result: RestoreResult, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=result.to_dict())
    elif result.ok:
        console.print(f"[green]Restored {result.archive}; nginx restarted.[/green]")
    elif result.outcome is RestoreOutcome.ABORTED:
        console.print(f"[red]Restore aborted before touching nginx:[/red] {escape(result.detail)}")
    elif result.outcome is RestoreOutcome.ROLLED_BACK:
        console.print(f"[red]Restore failed:[/red] {escape(result.detail)}")
        console.print("[yellow]Previous configuration was put back and nginx restarted.[/yellow]")
    else:
        console.print(
            f"[bold red]Restore failed and recovery failed:[/bold red] {escape(result.detail)}"
        )
        console.print(f"[red]rollback error:[/red] {escape(str(result.rollback_error))}")
        console.print("[bold red]Live state is unknown; operator action required.[/bold red]")

    codes = {
        RestoreOutcome.DONE: ExitCode.OK,
        RestoreOutcome.ABORTED: ExitCode.VALIDATION,
        RestoreOutcome.ROLLED_BACK: ExitCode.PROVIDER,
        RestoreOutcome.FATAL_INCONSISTENT: ExitCode.FATAL,
    }
    code = codes[result.outcome]
    if code is not ExitCode.OK:
        raise typer.Exit(code=int(code))


# ----------------------------------------------------------------------
# backup / config
# ----------------------------------------------------------------------
@backups_app.command("list")
def backup_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List explicit backups recorded in the index."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "backup", "scope": "index"},
    ) as op:
        with _guard(op):
            entries = runtime.engine.backups.list_entries()
        entries.sort(key=lambda item: str(item.get("created_at", "")), reverse=True)

        if json_output:
            console.print_json(data={"backups": entries})
            op.success("Reported backup list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Created At")
        table.add_column("Path")
        table.add_column("Size")
        table.add_column("Message")
        if not entries:
            table.add_row("(none)", "", "", "", "")
        for entry in entries:
            table.add_row(
                str(entry.get("id", "")),
                str(entry.get("created_at", "")),
                str(entry.get("path", "")),
                str(entry.get("size_bytes", "")),
                str(entry.get("message", "")),
            )
        console.print(table)
        op.success("Reported backup list.", changed=0)


@backups_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    backup_id: str = typer.Argument(..., help="Identifier shown by 'backup list'."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Restore the archive recorded under a backup identifier."""
    runtime = _get_runtime(ctx)
    with runtime.engine.logger.operation(
        "backup restore",
        args={"id": backup_id, "json": json_output},
        target={"kind": "backup", "id": backup_id},
    ) as op:
        with _guard(op):
            result = runtime.engine.restore_backup(backup_id, op=op)
        _report_restore(result, json_output=json_output)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.engine.logger.operation(
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
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]

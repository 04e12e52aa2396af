"""Main Typer application entry point for the backup-gateway CLI."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from backup_gateway import __version__
from backup_gateway.core.exceptions import BackupGatewayError
from backup_gateway.core.models import AppConfig, LogFormat, StorageType, human_size
from backup_gateway.logging import setup_logging

app = typer.Typer(
    name="backup-gateway",
    help="Move database backups between local disk and remote object stores.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)


@dataclass
class _Options:
    config_path: Path | None
    verbose: bool
    log_json: bool


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"backup-gateway {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
        ctx: typer.Context,
        version: bool = typer.Option(
            False,
            "--version",
            "-V",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
        config: Path | None = typer.Option(
            None,
            "--config",
            "-c",
            help="Path to the TOML config file.",
            envvar="BACKUP_GATEWAY_CONFIG",
        ),
        verbose: bool = typer.Option(
            False,
            "--verbose",
            "-v",
            help="Enable verbose (DEBUG) logging.",
        ),
        log_json: bool = typer.Option(
            False,
            "--log-json",
            help="Output logs in JSON format.",
        ),
) -> None:
    """backup-gateway: backup transfer service with a REST control plane."""
    ctx.obj = _Options(config_path=config, verbose=verbose, log_json=log_json)
    setup_logging(
        level="DEBUG" if verbose else "INFO",
        log_format=LogFormat.JSON if log_json else LogFormat.CONSOLE,
    )


def _load(ctx: typer.Context) -> AppConfig:
    """Load the configuration and apply its logging section."""
    from backup_gateway.core.config import load_config

    opts: _Options = ctx.obj
    try:
        config = load_config(opts.config_path)
    except BackupGatewayError as exc:
        err_console.print(f"[bold red]✗ {exc}[/bold red]")
        raise typer.Exit(code=1) from exc

    setup_logging(
        level="DEBUG" if opts.verbose else config.logging.level,
        log_file=config.logging.log_file,
        log_format=LogFormat.JSON if opts.log_json else config.logging.format,
    )
    return config


# ──────────────────── server command ─────────────────────


@app.command("server")
def server(ctx: typer.Context) -> None:
    """Run the REST control plane until interrupted."""
    from backup_gateway.api.control import ControlServer
    from backup_gateway.core.config import CONFIG_FILE

    config = _load(ctx)
    config_path = ctx.obj.config_path or (CONFIG_FILE if CONFIG_FILE.exists() else None)
    control = ControlServer(config, config_path=config_path, reconfigure_logging=True)

    console.print(f"[bold]backup-gateway {__version__}[/bold] listening on {config.api.listen_addr}")
    try:
        asyncio.run(control.run())
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/yellow]")
    except OSError as exc:
        err_console.print(f"[bold red]✗ Cannot listen on {config.api.listen_addr}: {exc}[/bold red]")
        raise typer.Exit(code=1) from exc


# ──────────────────── config commands ────────────────────


@app.command("default-config")
def default_config_cmd() -> None:
    """Print the built-in default configuration as TOML."""
    import tomli_w

    from backup_gateway.core.config import config_to_dict, default_config

    console.print(Syntax(tomli_w.dumps(config_to_dict(default_config())), "toml", theme="monokai"))


@app.command("print-config")
def print_config(ctx: typer.Context) -> None:
    """Print the effective configuration (file + environment), secrets masked."""
    import tomli_w

    from backup_gateway.core.config import config_to_dict

    config = _load(ctx)
    console.print(Syntax(tomli_w.dumps(config_to_dict(config)), "toml", theme="monokai"))


# ──────────────────── inspection commands ────────────────


@app.command("tables")
def tables(ctx: typer.Context) -> None:
    """List the tables available for backup."""
    from backup_gateway.engines import get_engine

    engine = get_engine(_load(ctx))
    try:
        names = engine.list_tables()
    except BackupGatewayError as exc:
        err_console.print(f"[bold red]✗ {exc}[/bold red]")
        raise typer.Exit(code=1) from exc

    if not names:
        console.print("[yellow]No tables found.[/yellow]")
        return
    for name in names:
        console.print(name)


@app.command("list")
def list_backups(
        ctx: typer.Context,
        remote: bool = typer.Option(
            True, "--remote/--local-only", help="Include backups in remote storage."
        ),
) -> None:
    """List local and remote backups."""
    from backup_gateway.engines import get_engine

    config = _load(ctx)
    engine = get_engine(config)
    try:
        backups = engine.list_local_backups()
        if remote and config.general.remote_storage != StorageType.NONE:
            backups += engine.list_remote_backups()
    except BackupGatewayError as exc:
        err_console.print(f"[bold red]✗ {exc}[/bold red]")
        raise typer.Exit(code=1) from exc

    if not backups:
        console.print("[yellow]No backups found.[/yellow]")
        return

    table = Table(title="Available Backups", show_lines=True)
    table.add_column("Name", style="cyan")
    table.add_column("Location")
    table.add_column("Size", style="green", justify="right")
    table.add_column("Created", style="magenta")

    for b in backups:
        created = b.created.strftime("%Y-%m-%d %H:%M:%S") if b.created else "-"
        table.add_row(b.name, b.location, human_size(b.size), created)

    console.print(table)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()

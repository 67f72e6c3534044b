"""Operator CLI for the persistent cache.

Exposes the ``apicache`` console script declared in ``pyproject.toml``::

    apicache stats                  # record counts per collection
    apicache sweep                  # delete expired records now
    apicache clear --collection colors
    apicache presets                # list the named configurations

Every command works on the SQLite file chosen by ``--database``, else the
``database_path`` of the resolved configuration (``--config``,
``$APICACHE_CONFIG`` ...), else the default location under the XDG cache
directory. ``--json`` switches data output to JSON on stdout; diagnostics
always go to stderr.

:class:`~apicache.exceptions.ApiCacheError` failures exit with the error's
``exit_code`` (see :mod:`apicache.exit_codes`).
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import typer
from rich.console import Console
from rich.table import Table

from apicache import __version__
from apicache.exceptions import ApiCacheError
from apicache.exit_codes import EXIT_GENERIC_FAILURE

app = typer.Typer(
    name="apicache",
    help="Inspect and maintain the apicache persistent store.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)

_stdout = Console()
_stderr = Console(stderr=True)


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"apicache {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    database: Optional[Path] = typer.Option(
        None, "--database", "-d", help="SQLite file of the persistent store."
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Config file (JSON or YAML)."
    ),
    json_output: bool = typer.Option(
        False, "--json", help="JSON output format."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Stores the shared options in ``ctx.obj`` and configures logging.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["database"] = database
    ctx.obj["config_path"] = config_path
    ctx.obj["json"] = json_output


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


@contextmanager
def _handle_errors() -> Iterator[None]:
    """Report cache errors on stderr and exit with their exit code."""
    try:
        yield
    except ApiCacheError as exc:
        _stderr.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=exc.exit_code) from None


def _database_path(ctx: typer.Context) -> str:
    from apicache.config import default_database_path, resolve_config

    if ctx.obj.get("database") is not None:
        return str(ctx.obj["database"])
    config = resolve_config(ctx.obj.get("config_path"))
    if config.database_path:
        return config.database_path
    return str(default_database_path())


def _open_store(ctx: typer.Context):
    from apicache.persistent import EntityStore

    return EntityStore(_database_path(ctx))


def _emit_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2))


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


@app.command("stats")
def stats_command(ctx: typer.Context) -> None:
    """Show record counts of the persistent store.

    Expired records still on disk are reported separately; they disappear
    on the next ``apicache sweep`` or maintenance run.

    Example::

        apicache stats
        apicache --json stats
    """
    with _handle_errors(), _open_store(ctx) as store:
        collections = store.collections()
        data = {
            "database": store.path,
            "total": store.count(),
            "expired": store.count_expired(),
            "collections": collections,
        }

    if ctx.obj["json"]:
        _emit_json(data)
        return

    table = Table(title=f"Persistent cache: {data['database']}", show_header=True, header_style="bold cyan")
    table.add_column("Collection")
    table.add_column("Records", justify="right")
    for name, total in collections.items():
        table.add_row(name, str(total))
    table.add_section()
    table.add_row("[bold]Total[/bold]", str(data["total"]))
    table.add_row("Expired (awaiting sweep)", str(data["expired"]))
    _stdout.print(table)


@app.command("sweep")
def sweep_command(ctx: typer.Context) -> None:
    """Delete every expired record now.

    Example::

        apicache sweep
    """
    from apicache.scheduler import MaintenanceScheduler

    with _handle_errors(), _open_store(ctx) as store:
        removed = MaintenanceScheduler(store).run_now()

    if ctx.obj["json"]:
        _emit_json({"removed": removed})
    else:
        _stderr.print(f"[green]Removed {removed} expired record(s).[/green]")


@app.command("clear")
def clear_command(
    ctx: typer.Context,
    collection: Optional[str] = typer.Option(
        None, "--collection", help="Only clear this collection."
    ),
    yes: bool = typer.Option(
        False, "--yes", "-y", help="Skip the confirmation prompt."
    ),
) -> None:
    """Delete records from the persistent store.

    Example::

        apicache clear --yes
        apicache clear --collection colors
    """
    scope = f"collection '{collection}'" if collection else "all collections"
    if not yes:
        typer.confirm(f"Delete every cached record in {scope}?", abort=True)

    with _handle_errors(), _open_store(ctx) as store:
        if collection:
            removed = store.clear_collection(collection)
        else:
            removed = store.count()
            store.clear()

    if ctx.obj["json"]:
        _emit_json({"removed": removed, "collection": collection})
    else:
        _stderr.print(f"[green]Removed {removed} record(s) from {scope}.[/green]")


@app.command("presets")
def presets_command(ctx: typer.Context) -> None:
    """List the named configuration presets.

    Example::

        apicache presets
    """
    from apicache.config import PRESETS

    if ctx.obj["json"]:
        _emit_json(
            {
                name: config.model_dump(mode="json", exclude_none=True)
                for name, config in PRESETS.items()
            }
        )
        return

    table = Table(title="Cache presets", show_header=True, header_style="bold cyan")
    for column in ("Preset", "Enabled", "Memory", "Persistent", "Memory TTL", "Persistent TTL"):
        table.add_column(column)
    for name, config in PRESETS.items():
        table.add_row(
            name,
            "yes" if config.enabled else "no",
            str(config.max_memory_entries) if config.memory_enabled else "off",
            "on" if config.persistent_enabled else "off",
            str(config.default_expiration),
            str(config.persistent_default_expiration),
        )
    _stdout.print(table)


# ------------------------------------------------------------------ #
# Entry point
# ------------------------------------------------------------------ #


def main() -> None:
    """CLI entry point invoked by the ``apicache`` console script.

    Unhandled :class:`~apicache.exceptions.ApiCacheError` instances cause a
    clean exit with the error's ``exit_code``; anything else exits with
    :data:`~apicache.exit_codes.EXIT_GENERIC_FAILURE`.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)
    except ApiCacheError as exc:
        _stderr.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(exc.exit_code)
    except Exception as exc:
        _stderr.print(f"[bold red]Unexpected error:[/bold red] {exc}")
        sys.exit(EXIT_GENERIC_FAILURE)

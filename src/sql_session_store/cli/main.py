"""CLI entry point for sql-session-store.

Invoked as::

    sql-session-store [OPTIONS] COMMAND [ARGS]...

or, during development::

    python -m sql_session_store.cli.main

Commands
--------
- version  — Show version information
- init-db  — Create the session table
- show     — Display one stored session record
- destroy  — Delete one session
- gc       — Delete expired sessions now
- stats    — Count stored and expired sessions
"""
from __future__ import annotations

import logging
import sys

import click
from rich.console import Console
from rich.table import Table
from sqlalchemy import MetaData, func, select
from sqlalchemy.engine import Engine

from sql_session_store.config import StoreConfig
from sql_session_store.errors import ConfigurationError, LockTimeoutError
from sql_session_store.expiry import ExpiryPolicy
from sql_session_store.gc import GarbageCollector
from sql_session_store.schema import build_session_table

console = Console()

_PREVIEW_BYTES: int = 120

# ---------------------------------------------------------------------------
# Config / engine factory
# ---------------------------------------------------------------------------


def _load_config(config_path: str | None, url: str | None) -> StoreConfig:
    """Build the effective config from an optional YAML file and URL override.

    Parameters
    ----------
    config_path:
        Path to a YAML config file, or None for defaults.
    url:
        Database URL overriding the one in the file.

    Returns
    -------
    StoreConfig
    """
    config = StoreConfig.from_yaml(config_path) if config_path else StoreConfig()
    if url:
        config = config.model_copy(update={"url": url})
    return config


def _engine(ctx: click.Context) -> Engine:
    engine = ctx.obj.get("engine")
    if engine is None:
        engine = ctx.obj["config"].create_engine()
        ctx.obj["engine"] = engine
        ctx.call_on_close(engine.dispose)
    return engine


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="YAML configuration file.",
)
@click.option("--url", default=None, help="Database URL (overrides the config file).")
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, url: str | None, log_level: str) -> None:
    """Relational session storage with per-session locking"""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = _load_config(config_path, url)
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        sys.exit(2)


# ---------------------------------------------------------------------------
# version
# ---------------------------------------------------------------------------


@cli.command(name="version")
def version_command() -> None:
    """Show version information."""
    from sql_session_store import __version__

    console.print(f"[bold]sql-session-store[/bold] v{__version__}")


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


@cli.command(name="init-db")
@click.pass_context
def init_db_command(ctx: click.Context) -> None:
    """Create the session table if it does not exist."""
    config: StoreConfig = ctx.obj["config"]
    metadata = MetaData()
    build_session_table(metadata, config)
    metadata.create_all(_engine(ctx))
    console.print(f"[green]Table ready:[/green] {config.table}")


# ---------------------------------------------------------------------------
# show
# ---------------------------------------------------------------------------


@cli.command(name="show")
@click.argument("session_id")
@click.pass_context
def show_command(ctx: click.Context, session_id: str) -> None:
    """Display the stored record for SESSION_ID without locking it."""
    config: StoreConfig = ctx.obj["config"]
    table = build_session_table(MetaData(), config)
    cols = config.columns
    policy = ExpiryPolicy(config.max_lifetime)

    with _engine(ctx).connect() as conn:
        row = conn.execute(
            select(table.c[cols.expiry], table.c[cols.data]).where(
                table.c[cols.id] == session_id
            )
        ).first()

    if row is None:
        console.print(f"[red]Session not found:[/red] {session_id}")
        sys.exit(1)

    expiry, data = row
    data = bytes(data)
    view = Table(title=f"Session {session_id}", show_lines=True)
    view.add_column("Field", style="bold cyan")
    view.add_column("Value")
    view.add_row("expiry", str(expiry))
    view.add_row(
        "status",
        "[red]expired[/red]" if policy.is_expired(expiry) else "[green]valid[/green]",
    )
    view.add_row("size", f"{len(data)} bytes")
    view.add_row("preview", data[:_PREVIEW_BYTES].decode("utf-8", errors="replace"))
    console.print(view)


# ---------------------------------------------------------------------------
# destroy
# ---------------------------------------------------------------------------


@cli.command(name="destroy")
@click.argument("session_id")
@click.pass_context
def destroy_command(ctx: click.Context, session_id: str) -> None:
    """Delete the session SESSION_ID."""
    from sql_session_store.store import SessionStore

    config: StoreConfig = ctx.obj["config"]
    try:
        with SessionStore(_engine(ctx), config) as store:
            store.open()
            store.destroy(session_id)
    except LockTimeoutError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)
    console.print(f"[green]Destroyed:[/green] {session_id}")


# ---------------------------------------------------------------------------
# gc
# ---------------------------------------------------------------------------


@cli.command(name="gc")
@click.pass_context
def gc_command(ctx: click.Context) -> None:
    """Delete every expired session immediately."""
    config: StoreConfig = ctx.obj["config"]
    table = build_session_table(MetaData(), config)
    policy = ExpiryPolicy(config.max_lifetime)
    with _engine(ctx).connect() as conn:
        GarbageCollector(table, config.columns.expiry).sweep(conn, policy.now())
    console.print("[green]Expired sessions removed.[/green]")


# ---------------------------------------------------------------------------
# stats
# ---------------------------------------------------------------------------


@cli.command(name="stats")
@click.pass_context
def stats_command(ctx: click.Context) -> None:
    """Show stored and expired session counts."""
    config: StoreConfig = ctx.obj["config"]
    table = build_session_table(MetaData(), config)
    expiry_col = table.c[config.columns.expiry]
    now = ExpiryPolicy(config.max_lifetime).now()

    with _engine(ctx).connect() as conn:
        total = conn.execute(select(func.count()).select_from(table)).scalar_one()
        expired = conn.execute(
            select(func.count()).select_from(table).where(expiry_col < now)
        ).scalar_one()

    view = Table(title="Sessions", show_lines=False)
    view.add_column("Metric", style="cyan")
    view.add_column("Count", justify="right")
    view.add_row("total", str(total))
    view.add_row("expired", str(expired))
    view.add_row("valid", str(total - expired))
    console.print(view)


if __name__ == "__main__":
    cli()

"""CLI for Parallel Task: run the API, migrate the database, drain the sync queue."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path

import click

from parallel_task.config import ConfigError, load_config
from parallel_task.core.logging import configure_logging
from parallel_task.db import Database

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """Parallel Task: Google Calendar sync service."""
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"), os.environ.get("LOG_FORMAT", "text"))


def _load_config_or_exit(config_path: Path | None):
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Interface to bind")
@click.option("--port", default=8000, show_default=True, type=int, help="Port to listen on")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to parallel_task.toml",
)
def serve(host: str, port: int, config_path: Path | None) -> None:
    """Run the HTTP API."""
    import uvicorn

    from parallel_task.api.app import create_app

    config = _load_config_or_exit(config_path)
    app = create_app(config)
    click.echo(f"Serving Parallel Task API on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_config=None)


@cli.command()
@click.option(
    "--provision/--no-provision",
    default=False,
    help="Create the database first if it does not exist",
)
def migrate(provision: bool) -> None:
    """Apply database migrations (DATABASE_URL or POSTGRES_* variables)."""
    asyncio.run(_migrate(provision))
    click.echo("Migrations applied.")


async def _migrate(provision: bool) -> None:
    from parallel_task.migrations import run_migrations

    db = Database.from_env()
    if provision:
        await db.provision()
    await run_migrations(db.url)


@cli.command("drain-queue")
@click.option(
    "--limit",
    default=50,
    show_default=True,
    type=click.IntRange(min=1),
    help="Maximum queue items to claim",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to parallel_task.toml",
)
def drain_queue(limit: int, config_path: Path | None) -> None:
    """Run one reconciliation pass over pending calendar notifications."""
    config = _load_config_or_exit(config_path)
    report = asyncio.run(_drain(config, limit))
    click.echo(
        f"Claimed {report.claimed} item(s) for {report.users} user(s): "
        f"{report.done} done, {report.failed} failed, {report.links_cleared} link(s) cleared"
    )
    for user_id, error in sorted(report.errors.items()):
        click.echo(f"  {user_id}: {error}")


async def _drain(config, limit: int):
    from parallel_task.api.deps import build_services, close_services

    services = await build_services(config)
    try:
        return await services.listener.drain_sync_queue(limit)
    finally:
        await close_services(services)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()

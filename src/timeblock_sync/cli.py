"""CLI for the calendar sync service: serve the API, migrate, run a sync."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from timeblock_sync.config import ConfigError, SyncSettings, load_settings
from timeblock_sync.crypto import generate_key
from timeblock_sync.db import Database
from timeblock_sync.errors import CalendarSyncError
from timeblock_sync.service import build_postgres_services

logger = logging.getLogger(__name__)


def _load(config_path: Path | None) -> SyncSettings:
    try:
        return load_settings(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to timeblock-sync.toml",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Timeblock calendar sync: keeps planned blocks and Google Calendar in step."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _configure_logging(settings: SyncSettings) -> None:
    from timeblock_sync.core.logging import configure_logging

    log_root = Path(settings.logging.log_root) if settings.logging.log_root else None
    configure_logging(settings.logging.level, settings.logging.format, log_root)


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8080, show_default=True)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Serve the calendar sync HTTP API."""
    import uvicorn

    from timeblock_sync.api.app import create_app

    settings = _load(ctx.obj["config_path"])
    _configure_logging(settings)
    # Single worker: OAuth state tokens are process-local.
    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)


@cli.command()
@click.pass_context
def migrate(ctx: click.Context) -> None:
    """Upgrade the database schema to the latest revision."""
    from timeblock_sync.migrations import run_migrations

    settings = _load(ctx.obj["config_path"])
    _configure_logging(settings)
    if not settings.database.url:
        click.echo("database.url (or DATABASE_URL) is required", err=True)
        sys.exit(2)
    asyncio.run(run_migrations(settings.database.url))
    click.echo("Schema is up to date")


@cli.command()
@click.argument("user_id")
@click.pass_context
def sync(ctx: click.Context, user_id: str) -> None:
    """Run one recovering poll for USER_ID and print the result as JSON."""
    settings = _load(ctx.obj["config_path"])
    _configure_logging(settings)
    try:
        result = asyncio.run(_run_sync(settings, user_id))
    except (ConfigError, CalendarSyncError) as exc:
        click.echo(f"Sync failed: {exc}", err=True)
        sys.exit(1)
    click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("user_id")
@click.pass_context
def status(ctx: click.Context, user_id: str) -> None:
    """Print the connection and sync status for USER_ID."""
    settings = _load(ctx.obj["config_path"])
    _configure_logging(settings)
    try:
        result = asyncio.run(_load_status(settings, user_id))
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    click.echo(json.dumps(result, indent=2))


@cli.command("generate-key")
def generate_key_cmd() -> None:
    """Print a new token encryption key for sync.token_encryption_key."""
    click.echo(generate_key())


async def _run_sync(settings: SyncSettings, user_id: str) -> dict:
    db = Database.from_config(settings.database)
    pool = await db.connect()
    services = build_postgres_services(settings, pool)
    try:
        result = await services.poller.sync(user_id)
        return result.model_dump(mode="json")
    finally:
        await services.aclose()
        await db.close()


async def _load_status(settings: SyncSettings, user_id: str) -> dict:
    from timeblock_sync.controller import load_sync_status
    from timeblock_sync.stores import PostgresConnectionStore, PostgresSyncStateStore

    db = Database.from_config(settings.database)
    pool = await db.connect()
    try:
        status = await load_sync_status(
            user_id,
            connections=PostgresConnectionStore(pool),
            sync_states=PostgresSyncStateStore(pool),
        )
        return status.model_dump(mode="json")
    finally:
        await db.close()


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()

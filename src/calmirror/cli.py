"""CLI for calmirror: inspect configuration and manage the local mirror store."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from calmirror.config import ConfigError, MirrorConfig, config_from_env, load_config
from calmirror.context import CalendarMirror, ConnectionTestResult
from calmirror.errors import CalendarMirrorError
from calmirror.logging import configure_logging
from calmirror.storage import PostgresAdapter, create_adapter

_CONFIG_OPTION = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to a calmirror TOML file (defaults to CALMIRROR_* environment variables)",
)


def _load(config_path: Path | None) -> MirrorConfig:
    try:
        config = load_config(config_path) if config_path is not None else config_from_env()
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    logging_config = config.storage.logging
    configure_logging(logging_config.level, logging_config.format, enabled=logging_config.enabled)
    return config


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """calmirror: mirror upstream calendar events into a local store."""


@cli.command("show-config")
@_CONFIG_OPTION
def show_config(config_path: Path | None) -> None:
    """Print the effective configuration with secrets omitted."""
    config = _load(config_path)
    storage = config.storage
    click.echo(f"backend:            {storage.backend}")
    if storage.backend == "postgres":
        click.echo(f"target:             {storage.connection.describe()}")
        ssl_desc = "off"
        if storage.ssl is not None:
            ssl_desc = storage.ssl.certificate_path or "system CAs"
            if not storage.ssl.reject_unauthorized:
                ssl_desc += " (unverified)"
        click.echo(f"ssl:                {ssl_desc}")
    click.echo(f"tables:             {storage.tables.credentials}, {storage.tables.calendars}, "
               f"{storage.tables.events}")
    click.echo(f"auto_create_tables: {storage.auto_create_tables}")
    click.echo(f"auto_connect:       {storage.auto_connect}")
    click.echo(f"log level:          {storage.logging.level} ({storage.logging.format})")
    click.echo(f"provider api_uri:   {config.provider.api_uri}")
    click.echo(f"provider api_key:   {'set' if config.provider.api_key else 'not set'}")


@cli.command("check-connection")
@_CONFIG_OPTION
def check_connection(config_path: Path | None) -> None:
    """Connect to the configured store and run a test query."""
    config = _load(config_path)
    result = asyncio.run(_check_connection(config))
    if result.success:
        click.echo(f"Connection OK (server time: {result.timestamp})")
        return
    click.echo(f"Connection FAILED: {result.error}", err=True)
    sys.exit(1)


async def _check_connection(config: MirrorConfig) -> ConnectionTestResult:
    mirror = CalendarMirror(config)
    try:
        return await mirror.test_connection()
    finally:
        await mirror.adapter.disconnect()


@cli.command("init-db")
@_CONFIG_OPTION
def init_db(config_path: Path | None) -> None:
    """Create the mirror tables in the configured PostgreSQL database."""
    config = _load(config_path)
    if config.storage.backend != "postgres":
        click.echo("init-db requires storage.backend = \"postgres\"", err=True)
        sys.exit(2)
    try:
        asyncio.run(_init_db(config))
    except CalendarMirrorError as exc:
        click.echo(f"init-db FAILED: {exc}", err=True)
        sys.exit(1)
    tables = config.storage.tables
    click.echo(f"Tables ready: {tables.credentials}, {tables.calendars}, {tables.events}")


async def _init_db(config: MirrorConfig) -> None:
    adapter = create_adapter(config)
    if not isinstance(adapter, PostgresAdapter):
        raise CalendarMirrorError(f"{adapter.name} has no tables to create")
    try:
        await adapter.connect()
        await adapter.create_tables()
    finally:
        await adapter.disconnect()

"""CLI for cellarsync: run the sync daemon or a single sync pass."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import click
from prometheus_client import start_http_server

from cellarsync import __version__
from cellarsync.config import ConfigError, SyncServiceConfig, load_config
from cellarsync.core.logging import configure_logging
from cellarsync.vault import CredentialVault

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(".")

_config_option = click.option(
    "--config",
    "config_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    show_default=True,
    help="Directory containing cellarsync.toml",
)


def _load(config_dir: Path) -> SyncServiceConfig:
    try:
        config = load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(config.logging.level, config.logging.format, log_root)
    return config


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """cellarsync: calendar sync between bookings and external calendars."""


@cli.command()
@_config_option
@click.option("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port")
def run(config_dir: Path, metrics_port: int | None) -> None:
    """Start the sync daemon and run until interrupted."""
    config = _load(config_dir)
    if metrics_port is not None:
        start_http_server(metrics_port)
        logger.info("Prometheus metrics exposed on port %d", metrics_port)
    asyncio.run(_run_daemon(config))


@cli.command()
@_config_option
def sync(config_dir: Path) -> None:
    """Run one sync pass and print the JSON report."""
    config = _load(config_dir)
    payload = asyncio.run(_sync_once(config))
    click.echo(json.dumps(payload, indent=2))


@cli.command()
@_config_option
@click.password_option("--value", prompt="Value to encrypt", help="Secret to encrypt")
def encrypt(config_dir: Path, value: str) -> None:
    """Encrypt a secret with the configured vault key."""
    config = _load(config_dir)
    click.echo(CredentialVault(config.encryption_key).encrypt(value))


async def _sync_once(config: SyncServiceConfig) -> dict:
    from cellarsync.service import SyncService

    service = await SyncService.from_config(config)
    try:
        report = await service.trigger_sync()
    finally:
        await service.stop()
    return report.to_payload()


async def _run_daemon(config: SyncServiceConfig) -> None:
    from cellarsync.service import SyncService

    loop = asyncio.get_event_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    service = await SyncService.from_config(config)
    await service.start()
    click.echo(f"cellarsync running (cron={config.sync.cron}, timezone={config.timezone})")

    await shutdown_event.wait()
    await service.stop()

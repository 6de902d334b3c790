"""mailbridge CLI - forward new IMAP mail to Telegram."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path

import click

from .bridge import initialize
from .config import load_config
from .errors import ConfigError, StoreError
from .schema import BridgeConfig
from .startup import setup_logging
from .store import CursorStore

logger = logging.getLogger(__name__)

_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

config_option = click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config file (default: config.yaml/.yml/.json in the current directory).",
)


def _load_or_exit(config_file: Path | None) -> BridgeConfig:
    try:
        return load_config(config_file)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)


@click.group(help="Forward new mail from an IMAP mailbox to Telegram chats.")
@click.version_option(package_name="mailbridge")
def main() -> None:
    """mailbridge command line."""


async def _run_bridge(config: BridgeConfig) -> None:
    bridge = initialize(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, bridge.shutdown)
    await bridge.run()


@main.command(help="Run the bridge until interrupted.")
@config_option
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Override the configured log level.",
)
def run(config_file: Path | None, log_level: str | None) -> None:
    config = _load_or_exit(config_file)
    setup_logging(
        Path(config.log_file) if config.log_file else None,
        (log_level or config.log_level).upper(),
    )
    try:
        asyncio.run(_run_bridge(config))
    except StoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command("check-config", help="Validate the config file and print a summary.")
@config_option
def check_config(config_file: Path | None) -> None:
    config = _load_or_exit(config_file)
    imap = config.imap_settings()
    click.echo("Config OK\n")
    click.echo(f"  IMAP:        {'imaps' if imap.secure else 'imap'}://{imap.host}:{imap.port}")
    click.echo(f"  User:        {imap.user}")
    click.echo(f"  Mailbox:     {imap.mailbox}")
    click.echo(f"  Store:       {config.store}")
    click.echo(f"  Chat:        {config.bridged_chat_id}")
    click.echo(f"  Fan-out:     {len(config.mapping)} mapping keys")
    click.echo(f"  Batch size:  {config.batch_size}")


@main.group(help="Inspect or reset the stored watermark.")
def cursor() -> None:
    """Watermark commands."""


def _open_store(config: BridgeConfig) -> CursorStore:
    try:
        return CursorStore(Path(config.store))
    except StoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cursor.command("show", help="Print the last fetched UID.")
@config_option
def cursor_show(config_file: Path | None) -> None:
    store = _open_store(_load_or_exit(config_file))
    try:
        value = store.read()
    except StoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        store.close()
    click.echo("none" if value is None else str(value))


@cursor.command("reset", help="Forget the watermark; the next run only sees new mail.")
@config_option
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
def cursor_reset(config_file: Path | None, yes: bool) -> None:
    store = _open_store(_load_or_exit(config_file))
    try:
        if not yes and not click.confirm(f"Clear the watermark in {store.path}?", default=False):
            click.echo("Aborted.")
            return
        store.reset()
    except StoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        store.close()
    click.echo("Watermark cleared.")

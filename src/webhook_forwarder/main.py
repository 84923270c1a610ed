"""
Main entry point for the webhook forwarder.

This module provides the command-line interface for the forwarder,
handling startup, configuration, and one-off replays.
"""

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import click
import structlog

from .config.settings import ConfigurationError, load_config
from .dispatcher import WebhookDispatcher
from .utils.logging import setup_logging
from .webhooks.retry import DeliveryState


@click.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Set logging level",
)
@click.option(
    "--json-logs/--console-logs",
    default=True,
    help="Render logs as JSON lines (default) or for the console",
)
@click.version_option(package_name="webhook-forwarder")
def serve(
    config: Optional[Path] = None,
    log_level: Optional[str] = None,
    json_logs: bool = True,
) -> None:
    """
    Webhook Forwarder - delivers broker events to local and remote destinations.

    Polls the broker for new webhook events, routes them by source and
    forwards them with retries, skipping destinations that are down.
    """
    logger = structlog.get_logger()
    try:
        config_data = load_config(config_path=config)

        if log_level:
            config_data.server.log_level = log_level.upper()

        setup_logging(
            config_data.server.log_level,
            json_output=json_logs,
            webhook_id=config_data.broker.webhook_id or None,
        )

        logger.info(
            "Starting webhook forwarder",
            version=config_data.version,
            config_file=str(config) if config else "default",
            log_level=config_data.server.log_level,
        )

        if not config_data.broker.webhook_id:
            logger.error("WEBHOOK_FORWARDER_WEBHOOK_ID environment variable is required")
            sys.exit(1)

        if not config_data.destination:
            logger.warning("No destinations configured, events will be skipped")

        dispatcher = WebhookDispatcher(config_data, config_path=config)
        asyncio.run(dispatcher.run())

    except KeyboardInterrupt:
        logger.info("Forwarder shutdown requested")
        sys.exit(0)
    except (ConfigurationError, FileNotFoundError) as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        logger.error("Forwarder startup failed", error=str(e), exc_info=True)
        sys.exit(1)


async def _replay(dispatcher: WebhookDispatcher, event_id: str) -> List[DeliveryState]:
    try:
        task = await dispatcher.replay_event(event_id)
        if task is None:
            return []
        return await task
    finally:
        await dispatcher.close()


@click.command()
@click.argument("event_id")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
def replay(event_id: str, config: Optional[Path] = None) -> None:
    """Re-deliver EVENT_ID to its destinations, even if it already finished."""
    try:
        config_data = load_config(config_path=config)
    except (ConfigurationError, FileNotFoundError) as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    setup_logging(config_data.server.log_level, json_output=False)
    config_data.health.enabled = False

    dispatcher = WebhookDispatcher(config_data)
    try:
        states = asyncio.run(_replay(dispatcher, event_id))
    except LookupError as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    if not states:
        click.echo(f"No destination matched event {event_id}")
        return

    for state in states:
        click.echo(f"{state.destination}: {state.status.value} after {state.attempts} attempt(s)")
        if state.failure_reason:
            click.echo(f"  {state.failure_reason}")

    if any(state.status.value == "failed" for state in states):
        sys.exit(2)


@click.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(path_type=Path),
    help="Path to save configuration file",
)
def init_config(config: Optional[Path] = None) -> None:
    """Initialize a configuration file with default settings."""
    from .config.settings import create_default_config

    config_path = config or Path("webhook-forwarder.json")

    if config_path.exists():
        click.echo(f"Configuration file already exists: {config_path}")
        if not click.confirm("Overwrite?"):
            return

    try:
        create_default_config(config_path)
        click.echo(f"Created configuration file: {config_path}")
        click.echo("\nNext steps:")
        click.echo("1. Set environment variables:")
        click.echo("   export WEBHOOK_FORWARDER_API_KEY='your-api-key'")
        click.echo("   export WEBHOOK_FORWARDER_WEBHOOK_ID='your-webhook-id'")
        click.echo("2. Edit destinations and delivery_rules, then run:")
        click.echo(f"   webhook-forwarder serve --config {config_path}")
    except Exception as e:
        click.echo(f"Failed to create configuration file: {e}", err=True)
        sys.exit(1)


@click.group()
def cli() -> None:
    """Webhook Forwarder CLI."""
    pass


cli.add_command(serve, name="serve")
cli.add_command(replay, name="replay")
cli.add_command(init_config, name="init")


if __name__ == "__main__":
    cli()

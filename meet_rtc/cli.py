"""Unified CLI for meet-rtc using Click."""

import logging
import sys

import click
from loguru import logger

from meet_rtc.protocol import TOPOLOGY_HUB, TOPOLOGY_MESH
from meet_rtc.rtc_client import run_client
from meet_rtc.rtc_server import run_server

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def configure_logging(level: str) -> None:
    """Route library logging to stderr at ``level``."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


@click.group()
def cli():
    pass


@cli.command()
@click.option(
    "--host",
    type=str,
    envvar="MEET_RTC_HOST",
    required=False,
    help="Interface to bind. Overrides config file value.",
)
@click.option(
    "--port",
    "-p",
    type=int,
    envvar="MEET_RTC_PORT",
    required=False,
    help="Port to listen on (default: 5000). Overrides config file value.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    help="Logging verbosity.",
)
def serve(host, port, log_level):
    """Start the signaling server.

    Hub rooms use the in-process media engine, configured from the [media]
    section of meet-rtc.toml and the MEDIA_* / RTC_* environment variables.

    Example:
        meet-rtc serve --port 5000
    """
    configure_logging(log_level)

    if port is not None and not 0 < port <= 65535:
        logger.error(f"Invalid port: {port}")
        sys.exit(1)

    logger.info("Starting signaling server")
    run_server(host=host, port=port)


@cli.command()
@click.argument("room")
@click.option(
    "--url",
    "-u",
    type=str,
    envvar="MEET_RTC_SIGNALING_URL",
    required=False,
    help="Signaling server URL (default: ws://localhost:5000).",
)
@click.option(
    "--topology",
    "-t",
    type=click.Choice([TOPOLOGY_MESH, TOPOLOGY_HUB]),
    default=TOPOLOGY_MESH,
    help="Room topology.",
)
@click.option(
    "--duration",
    "-d",
    type=float,
    required=False,
    help="Seconds to stay in the room (default: until interrupted).",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    help="Logging verbosity.",
)
def join(room, url, topology, duration, log_level):
    """Join ROOM as a headless participant and log membership and media changes.

    Examples:
        meet-rtc join standup
        meet-rtc join standup --topology hub --duration 30
    """
    configure_logging(log_level)

    if duration is not None and duration <= 0:
        logger.error("--duration must be positive")
        sys.exit(1)

    try:
        run_client(room, url=url, topology=topology, duration=duration)
    except Exception as e:
        logger.error(f"Participant error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()

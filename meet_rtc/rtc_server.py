"""Entry point for the meet-rtc signaling server."""

import asyncio
import logging

from meet_rtc.config import get_config
from meet_rtc.server.media_engine import LocalMediaEngine
from meet_rtc.server.signaling_server import SignalingServer


def run_server(host=None, port=None):
    """Create the signaling server and run it until interrupted.

    Args:
        host: Interface to bind. CLI option overrides config file.
        port: Port to listen on. CLI option overrides config file.
    """
    config = get_config()
    engine = LocalMediaEngine(config.media)
    server = SignalingServer(engine=engine, config=config)

    try:
        asyncio.run(server.serve(host=host or config.host, port=port or config.port))
    except KeyboardInterrupt:
        logging.info("Server interrupted by user. Shutting down...")
    finally:
        logging.info("Server exiting...")

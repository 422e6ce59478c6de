"""Entry point for a headless meet-rtc participant."""

import asyncio
import logging

from meet_rtc.client.controller import HubController, MeshController
from meet_rtc.client.device import HeadlessDevice
from meet_rtc.client.signaling import SignalingClient
from meet_rtc.config import get_config
from meet_rtc.protocol import TOPOLOGY_HUB


def describe_change(event: str, info: dict) -> str:
    """One-line description of a controller change."""
    peer = info.get("peer_id") or info.get("transport_id")
    details = ", ".join(
        f"{key}={value}" for key, value in info.items() if key not in ("peer_id", "transport_id")
    )
    return f"{event}: {peer}" + (f" ({details})" if details else "")


async def participate(room_id, url, topology, duration=None, on_change=None):
    """Join ``room_id`` and stay for ``duration`` seconds (forever if None)."""
    config = get_config()
    signaling = SignalingClient(url)
    await signaling.connect()

    if topology == TOPOLOGY_HUB:
        controller = HubController(signaling, HeadlessDevice())
    else:
        controller = MeshController(signaling, pending_cap=config.pending_signal_cap)
    controller.on_change = on_change or (
        lambda event, info: logging.info(describe_change(event, info))
    )

    try:
        await controller.join(room_id)
        logging.info(f"In room {room_id} as {signaling.peer_id} ({topology})")
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
    finally:
        try:
            await controller.leave()
        finally:
            await signaling.close()


def run_client(room_id, url=None, topology="mesh", duration=None):
    """Run a headless participant until interrupted.

    Args:
        room_id: Room to join.
        url: Signaling server URL. CLI option overrides config file.
        topology: "mesh" or "hub".
        duration: Seconds to stay in the room; None stays until interrupted.
    """
    config = get_config()
    try:
        asyncio.run(
            participate(room_id, url or config.signaling_url, topology, duration=duration)
        )
    except KeyboardInterrupt:
        logging.info("Participant interrupted by user. Leaving...")
    finally:
        logging.info("Participant exiting...")

"""Event relay: ordered, de-duplicated delivery of notifications to peers.

Every connection gets one ``PeerChannel``: a FIFO queue drained by a single
writer task. Responses, relayed signals and room events all go through it,
so whatever is enqueued first for a peer is written first. Because events
about a unit are enqueued while the room lock is held, a unit's creation is
always delivered to a given peer before its closure.
"""

import asyncio
import json
import logging
from collections import deque
from typing import Deque, Dict, List, Optional, Set

import websockets
import websockets.exceptions

from meet_rtc.server.registry import RoomRegistry

logger = logging.getLogger(__name__)


class PeerChannel:
    """Single-writer outbound queue for one websocket connection.

    Attributes:
        peer_id: Peer the channel writes to.
        websocket: Anything with an awaitable ``send(str)``.
        closed: True once the connection is gone; later sends are dropped.
    """

    def __init__(self, peer_id: str, websocket, history_size: int = 512):
        self.peer_id = peer_id
        self.websocket = websocket
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None
        self._history: Deque[str] = deque()
        self._history_ids: Set[str] = set()
        self._history_size = history_size

    def start(self) -> None:
        """Start the writer task."""
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())

    def send(self, message: dict) -> bool:
        """Enqueue a frame; returns False if the channel is closed."""
        if self.closed:
            return False
        self._queue.put_nowait(message)
        return True

    def send_event(self, message: dict) -> bool:
        """Enqueue a notification unless one with the same event id was already sent."""
        event_id = message.get("event_id")
        if event_id is not None:
            if event_id in self._history_ids:
                logger.debug(f"Suppressed duplicate event {event_id} for {self.peer_id}")
                return False
            if not self.send(message):
                return False
            self._remember(event_id)
            return True
        return self.send(message)

    def _remember(self, event_id: str) -> None:
        self._history.append(event_id)
        self._history_ids.add(event_id)
        if len(self._history) > self._history_size:
            self._history_ids.discard(self._history.popleft())

    async def _write_loop(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                if not self.closed:
                    await self.websocket.send(json.dumps(message))
            except websockets.exceptions.ConnectionClosed:
                logger.info(f"Channel to {self.peer_id} closed while sending")
                self.closed = True
            except Exception as e:
                logger.error(f"Failed to send to {self.peer_id}: {e}")
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every enqueued frame has been written (or dropped)."""
        await self._queue.join()

    async def close(self) -> None:
        """Stop the writer; frames still queued are discarded."""
        self.closed = True
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()


class EventRelay:
    """Fan-out of notifications to room members."""

    def __init__(self, registry: RoomRegistry):
        self.registry = registry
        self.channels: Dict[str, PeerChannel] = {}

    def register(self, channel: PeerChannel) -> None:
        self.channels[channel.peer_id] = channel

    def unregister(self, peer_id: str) -> None:
        self.channels.pop(peer_id, None)

    def send_to(self, peer_id: str, message: dict) -> bool:
        """Deliver one frame to one peer; returns False if it is not connected."""
        channel = self.channels.get(peer_id)
        if channel is None:
            return False
        return channel.send_event(message)

    def broadcast(self, room_id: str, exclude_peer: Optional[str], message: dict) -> List[str]:
        """Deliver ``message`` to every member of ``room_id`` except ``exclude_peer``.

        Returns:
            Peer ids the message was enqueued for.
        """
        delivered = []
        for peer_id in self.registry.members(room_id):
            if peer_id == exclude_peer:
                continue
            if self.send_to(peer_id, message):
                delivered.append(peer_id)
        logger.debug(
            f"Broadcast {message.get('type')} in {room_id} to {len(delivered)} peer(s)"
        )
        return delivered

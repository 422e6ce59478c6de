"""Bounded per-peer queue for signals that arrive before their peer record.

A remote peer's answer or candidate can reach us before we have created the
local record it belongs to. Those envelopes are parked here, in arrival
order, and handed back exactly once when the record is created. Each peer's
queue is capped; when full, the oldest envelope is dropped.
"""

import logging
from collections import deque
from typing import Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_CAP = 64


class PendingSignalQueue:
    """Signals waiting for a peer record, keyed by remote peer id.

    Attributes:
        cap: Maximum envelopes kept per peer.
    """

    def __init__(self, cap: int = DEFAULT_CAP):
        if cap < 1:
            raise ValueError("Pending signal cap must be at least 1")
        self.cap = cap
        self._queues: Dict[str, Deque[dict]] = {}

    def push(self, peer_id: str, envelope: dict) -> Optional[dict]:
        """Append an envelope for ``peer_id``.

        Returns:
            The envelope dropped to make room, if the queue was full.
        """
        queue = self._queues.setdefault(peer_id, deque())
        dropped = None
        if len(queue) >= self.cap:
            dropped = queue.popleft()
            logger.warning(f"Pending signals for {peer_id} over cap ({self.cap}), dropped oldest")
        queue.append(envelope)
        return dropped

    def drain(self, peer_id: str) -> List[dict]:
        """Remove and return every envelope for ``peer_id`` in arrival order."""
        queue = self._queues.pop(peer_id, None)
        return list(queue) if queue else []

    def discard(self, peer_id: str) -> int:
        """Forget a peer's envelopes without applying them."""
        queue = self._queues.pop(peer_id, None)
        return len(queue) if queue else 0

    def peers(self) -> List[str]:
        return list(self._queues)

    def __len__(self) -> int:
        return sum(len(queue) for queue in self._queues.values())

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._queues

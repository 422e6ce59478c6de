"""Mesh negotiation: per-pair offer/answer bookkeeping on the server.

When a peer joins, every member already in the room becomes the initiator
toward it and the newcomer is the responder toward each of them. Exactly one
side of an unordered pair is ever allowed to send the first offer, which
rules out glare. The server validates every relayed offer/answer against the
pair state and forwards candidates unconditionally.

Pair states::

    none -> offering -> answered -> connected
                ^                       |
                +----- renegotiation ---+

A pair stuck at ``offering`` (unreachable responder) is only cleared when
either side disconnects.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Optional

from meet_rtc.errors import BadRequestError, NotFoundError, ProtocolError
from meet_rtc.protocol import SIGNAL_ANSWER, SIGNAL_CANDIDATE, SIGNAL_OFFER, SIGNAL_TYPES
from meet_rtc.server.registry import Room

logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class PairState(str, enum.Enum):
    NONE = "none"
    OFFERING = "offering"
    ANSWERED = "answered"
    CONNECTED = "connected"


def role(self_id: str, peer_id: str, was_already_present: bool) -> Role:
    """Role of ``self_id`` toward ``peer_id``.

    The member that was there first initiates: if ``self_id`` was already in
    the room when ``peer_id`` joined, ``self_id`` is the initiator.

    Raises:
        ValueError: If both ids are the same peer.
    """
    if self_id == peer_id:
        raise ValueError("A peer has no role toward itself")
    return Role.INITIATOR if was_already_present else Role.RESPONDER


def pair_key(a: str, b: str) -> FrozenSet[str]:
    return frozenset((a, b))


@dataclass
class MeshPair:
    """Negotiation state of one unordered pair of peers."""

    initiator: str
    responder: str
    state: PairState = PairState.NONE
    attempt: int = 0

    def role_of(self, peer_id: str) -> Role:
        if peer_id == self.initiator:
            return Role.INITIATOR
        if peer_id == self.responder:
            return Role.RESPONDER
        raise ValueError(f"{peer_id} is not part of this pair")


class MeshNegotiator:
    """Validates and tracks relayed mesh signals.

    All methods expect the caller to hold the room's lock.
    """

    def on_join(self, room: Room, joiner_id: str, existing: Iterable[str]) -> Dict[str, Role]:
        """Create initiator/responder pairs between a joiner and existing members.

        Returns:
            The joiner's role toward each existing member.
        """
        roles = {}
        for peer_id in existing:
            joiner_role = role(joiner_id, peer_id, was_already_present=False)
            key = pair_key(joiner_id, peer_id)
            if key not in room.pairs:
                room.pairs[key] = MeshPair(initiator=peer_id, responder=joiner_id)
            roles[peer_id] = joiner_role
        return roles

    def pair(self, room: Room, a: str, b: str) -> Optional[MeshPair]:
        return room.pairs.get(pair_key(a, b))

    def accept_signal(
        self, room: Room, sender: str, target: str, payload: dict
    ) -> Optional[MeshPair]:
        """Validate a signal from ``sender`` to ``target`` and advance the pair.

        Returns:
            The pair the signal belongs to (None for a candidate with no pair).

        Raises:
            BadRequestError: Malformed payload or self-addressed signal.
            NotFoundError: Target is not a member of the room.
            ProtocolError: Offer from the responder (glare), or an answer
                with no outstanding offer.
        """
        if not isinstance(payload, dict) or payload.get("type") not in SIGNAL_TYPES:
            raise BadRequestError(f"Signal payload type must be one of {SIGNAL_TYPES}")
        if sender == target:
            raise BadRequestError("Cannot signal oneself")
        if target not in room.members:
            raise NotFoundError(f"Peer {target} is not in room {room.room_id}")

        signal_type = payload["type"]
        pair = self.pair(room, sender, target)

        if signal_type == SIGNAL_CANDIDATE:
            return pair

        if pair is None:
            if signal_type != SIGNAL_OFFER:
                raise ProtocolError(f"No negotiation in progress with {target}")
            # First offer wins the initiator role for a pair with no state yet.
            pair = MeshPair(initiator=sender, responder=target)
            room.pairs[pair_key(sender, target)] = pair

        sender_role = pair.role_of(sender)
        if signal_type == SIGNAL_OFFER:
            if sender_role is Role.RESPONDER:
                raise ProtocolError(
                    f"{sender} is the responder toward {target} and may not send offers"
                )
            pair.state = PairState.OFFERING
            pair.attempt += 1
            logger.debug(f"Pair {sender}->{target} offering (attempt {pair.attempt})")

        elif signal_type == SIGNAL_ANSWER:
            if sender_role is Role.INITIATOR:
                raise ProtocolError(f"{sender} is the initiator toward {target}; cannot answer")
            if pair.state is not PairState.OFFERING:
                raise ProtocolError(f"No outstanding offer from {target} to answer")
            pair.state = PairState.ANSWERED
            logger.debug(f"Pair {target}<-{sender} answered (attempt {pair.attempt})")

        return pair

    def mark_delivered(self, pair: Optional[MeshPair], signal_type: str) -> None:
        """Advance an answered pair to connected once the answer is handed off."""
        if pair is not None and signal_type == SIGNAL_ANSWER and pair.state is PairState.ANSWERED:
            pair.state = PairState.CONNECTED
            logger.info(f"Pair {pair.initiator}<->{pair.responder} connected")

    def drop_peer(self, room: Room, peer_id: str) -> int:
        """Forget every pair involving ``peer_id``; returns how many were dropped."""
        stale = [key for key in room.pairs if peer_id in key]
        for key in stale:
            del room.pairs[key]
        return len(stale)

"""
Per-participant negotiation state.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.exceptions import InvalidTransitionError


class LinkState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


ALLOWED_TRANSITIONS = {
    LinkState.IDLE: {LinkState.NEGOTIATING, LinkState.CLOSED},
    LinkState.NEGOTIATING: {LinkState.CONNECTED, LinkState.CLOSED},
    LinkState.CONNECTED: {LinkState.CLOSED},
    LinkState.CLOSED: set(),
}


@dataclass
class PeerLink:
    """Negotiation and media session with one remote participant.

    Attributes:
        remote_connection_id: Relay connection id of the remote participant
        pc: The underlying RTCPeerConnection
        offered: True when this side produced the offer
        senders: Outgoing RTCRtpSender per track kind
        remote_tracks: Received tracks per kind
        pending_local_candidates: Local candidates waiting for our description to be sent
        pending_remote_candidates: Remote candidates waiting for the remote description
        attempts: Negotiation attempts that timed out
        settled: Set once the link is connected or closed
    """

    remote_connection_id: str
    pc: Any
    state: LinkState = LinkState.IDLE
    local_description_sent: bool = False
    remote_description_set: bool = False
    offered: bool = False
    senders: Dict[str, Any] = field(default_factory=dict)
    remote_tracks: Dict[str, Any] = field(default_factory=dict)
    pending_local_candidates: List[dict] = field(default_factory=list)
    pending_remote_candidates: List[dict] = field(default_factory=list)
    attempts: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    settled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    watchdog: Optional[asyncio.Task] = field(default=None, repr=False)

    def transition(self, new_state: LinkState):
        """Move to ``new_state`` or raise InvalidTransitionError."""
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.remote_connection_id, self.state.value, new_state.value)
        self.state = new_state
        if new_state in (LinkState.CONNECTED, LinkState.CLOSED):
            self.settled.set()

    @property
    def awaiting_answer(self) -> bool:
        return (
            self.state is LinkState.NEGOTIATING
            and self.offered
            and self.local_description_sent
            and not self.remote_description_set
        )

    @property
    def is_closed(self) -> bool:
        return self.state is LinkState.CLOSED

    def expect_answer(self):
        """Reject an answer that arrives while no offer of ours is outstanding."""
        if not self.awaiting_answer:
            raise InvalidTransitionError(self.remote_connection_id, self.state.value, "answer")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'remote_connection_id': self.remote_connection_id,
            'state': self.state.value,
            'offered': self.offered,
            'local_description_sent': self.local_description_sent,
            'remote_description_set': self.remote_description_set,
            'remote_tracks': sorted(self.remote_tracks),
            'attempts': self.attempts,
        }

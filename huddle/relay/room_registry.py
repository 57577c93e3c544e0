"""
In-memory room membership for the signaling relay.

Every operation is synchronous and never awaits, so each call runs as one
uninterrupted critical section on the relay's event loop. Concurrent joins,
leaves and disconnects for the same room therefore never interleave.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from ..core.logging import LoggerMixin


@dataclass
class Participant:
    """A connection that joined a room."""

    connection_id: str
    user_id: str
    display_name: str

    def to_dict(self) -> dict:
        return {
            'connectionId': self.connection_id,
            'userId': self.user_id,
            'displayName': self.display_name,
        }


@dataclass
class Room:
    """A named set of participants, keyed by connection id in join order."""

    room_id: str
    participants: Dict[str, Participant] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.participants)

    def to_dict(self) -> dict:
        return {
            'roomId': self.room_id,
            'participants': [p.to_dict() for p in self.participants.values()],
        }


class RoomRegistry(LoggerMixin):
    """Maps room ids to their participants. Empty rooms are never kept."""

    def __init__(self):
        super().__init__()
        self.rooms: Dict[str, Room] = {}
        # connection id -> ids of the rooms it sits in
        self._membership: Dict[str, Set[str]] = {}

    def join(self, room_id: str, connection_id: str, user_id: str, display_name: str) -> Room:
        """Insert or update a participant, creating the room if absent."""
        room = self.rooms.get(room_id)
        if room is None:
            room = Room(room_id)
            self.rooms[room_id] = room
            self.log_info(f"🏠 [RoomRegistry] Room created", {"room_id": room_id})

        existing = room.participants.get(connection_id)
        if existing is not None:
            existing.user_id = user_id
            existing.display_name = display_name
        else:
            room.participants[connection_id] = Participant(connection_id, user_id, display_name)
        self._membership.setdefault(connection_id, set()).add(room_id)

        return room

    def leave(self, room_id: str, connection_id: str) -> int:
        """Remove a participant and return how many remain. Unknown ids are ignored."""
        room = self.rooms.get(room_id)
        if room is None:
            return 0

        if room.participants.pop(connection_id, None) is not None:
            rooms = self._membership.get(connection_id)
            if rooms is not None:
                rooms.discard(room_id)
                if not rooms:
                    del self._membership[connection_id]

        remaining = len(room)
        if remaining == 0:
            del self.rooms[room_id]
            self.log_info(f"🧹 [RoomRegistry] Room removed (empty)", {"room_id": room_id})
        return remaining

    def list_others(self, room_id: str, excluding_connection_id: str) -> List[Participant]:
        """Participants of a room in join order, without ``excluding_connection_id``."""
        room = self.rooms.get(room_id)
        if room is None:
            return []
        return [
            participant for connection_id, participant in room.participants.items()
            if connection_id != excluding_connection_id
        ]

    def remove_connection(self, connection_id: str) -> List[Tuple[str, int]]:
        """Purge a connection from every room it belongs to.

        Returns one ``(room_id, remaining_count)`` pair per affected room.
        The membership index is only a hint; rooms are scanned as well so a
        drifted index never leaves a stale participant behind.
        """
        room_ids = set(self._membership.pop(connection_id, set()))
        room_ids.update(
            room_id for room_id, room in self.rooms.items()
            if connection_id in room.participants
        )

        results = []
        for room_id in sorted(room_ids):
            room = self.rooms.get(room_id)
            if room is None or connection_id not in room.participants:
                continue
            results.append((room_id, self.leave(room_id, connection_id)))
        return results

    def get_room(self, room_id: str) -> Optional[Room]:
        return self.rooms.get(room_id)

    def get_participant(self, room_id: str, connection_id: str) -> Optional[Participant]:
        """Look up a participant; None if the room or the connection is unknown."""
        room = self.rooms.get(room_id)
        if room is None:
            return None
        return room.participants.get(connection_id)

    def rooms_of(self, connection_id: str) -> List[str]:
        """Sorted ids of the rooms a connection sits in."""
        return sorted(self._membership.get(connection_id, ()))

    def contains_connection(self, connection_id: str) -> bool:
        """True while the connection is a member of any room."""
        return bool(self._membership.get(connection_id))

    def list_rooms(self) -> List[dict]:
        """Snapshot of every room for the rooms-list message and the status endpoint."""
        return [room.to_dict() for room in self.rooms.values()]

    @property
    def room_count(self) -> int:
        return len(self.rooms)

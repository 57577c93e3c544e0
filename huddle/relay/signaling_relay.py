"""
Signaling relay: routes room and negotiation messages between connections.

The relay never inspects offer/answer/candidate payloads. It only routes them
by target connection id, so negotiation messages for a peer that just left
are dropped instead of raising.
"""
import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from ..core import protocol
from ..core.logging import LoggerMixin
from ..core.validation_utils import ValidationUtils
from .room_registry import RoomRegistry

SendCallable = Callable[[Dict[str, Any]], Awaitable[Any]]


class SignalingRelay(LoggerMixin):
    """Message router over persistent per-client connections."""

    def __init__(self, registry: RoomRegistry):
        super().__init__()
        self.registry = registry
        self.connections: Dict[str, SendCallable] = {}
        self._last_chat_timestamp: Dict[str, int] = {}

        self.handlers: Dict[str, Callable[[str, Dict[str, Any]], Awaitable[None]]] = {
            protocol.JOIN_ROOM: self.handle_join,
            protocol.LEAVE_ROOM: self.handle_leave,
            protocol.OFFER: self.handle_session_description,
            protocol.ANSWER: self.handle_session_description,
            protocol.ICE_CANDIDATE: self.handle_ice_candidate,
            protocol.CHAT_MESSAGE: self.handle_chat,
            protocol.LIST_ROOMS: self.handle_list_rooms,
        }

    def connect(self, send: SendCallable, connection_id: Optional[str] = None) -> str:
        """Register a connection and return its relay-assigned id."""
        connection_id = connection_id or uuid.uuid4().hex
        self.connections[connection_id] = send
        self.log_info(f"🔌 [Relay] Connection registered", {
            "connection_id": connection_id,
            "total_connections": len(self.connections)
        })
        return connection_id

    async def disconnect(self, connection_id: str):
        """Handle a transport-level close: purge the connection and notify its rooms."""
        self.connections.pop(connection_id, None)

        for room_id, remaining in self.registry.remove_connection(connection_id):
            self.log_info(f"🧹 [Relay] Removed connection from room on disconnect", {
                "connection_id": connection_id,
                "room_id": room_id,
                "remaining": remaining
            })
            if remaining:
                await self.broadcast_to_room(
                    room_id,
                    protocol.build_message(protocol.PARTICIPANT_LEFT, connectionId=connection_id),
                )
            else:
                self._last_chat_timestamp.pop(room_id, None)

        self.log_info(f"❌ [Relay] Connection closed", {
            "connection_id": connection_id,
            "total_connections": len(self.connections)
        })

    async def handle_message(self, connection_id: str, data: Dict[str, Any]):
        """Dispatch one decoded message from a connection."""
        error = ValidationUtils.validate_message(data)
        if error:
            self.log_warning(f"Dropping malformed message", {
                "connection_id": connection_id,
                "error": error
            })
            return

        action = data['action']
        handler = self.handlers.get(action)
        if handler is None:
            self.log_warning(f"Dropping message with unknown action", {
                "connection_id": connection_id,
                "action": action,
                "available_actions": list(self.handlers.keys())
            })
            return

        try:
            await handler(connection_id, data)
        except Exception as e:
            self.log_error(f"Error handling message", {
                "connection_id": connection_id,
                "action": action,
                "error": str(e),
                "error_type": type(e).__name__
            })

    def _drop_if_invalid(self, connection_id: str, data: Dict[str, Any], required: list) -> bool:
        error = ValidationUtils.validate_required_fields(data, required)
        if error:
            self.log_debug(f"Dropping incomplete message", {
                "connection_id": connection_id,
                "action": data.get('action'),
                "error": error
            })
            return True
        return False

    async def handle_join(self, connection_id: str, data: Dict[str, Any]):
        if self._drop_if_invalid(connection_id, data, ['roomId']):
            return

        room_id = str(data['roomId'])
        user_id = data.get('userId') or connection_id
        display_name = data.get('displayName') or (
            f"User-{data['userId']}" if data.get('userId') else f"User-{connection_id[:5]}"
        )

        # A connection sits in at most one room at a time
        for previous_room in self.registry.rooms_of(connection_id):
            if previous_room != room_id:
                await self._leave(connection_id, previous_room)

        self.registry.join(room_id, connection_id, user_id, display_name)
        self.log_info(f"📥 [Relay] {display_name} ({connection_id}) joined room {room_id}")

        participants = [p.to_dict() for p in self.registry.list_others(room_id, connection_id)]
        await self.send_to(
            connection_id,
            protocol.build_message(protocol.ROOM_PARTICIPANTS, roomId=room_id, participants=participants),
        )

        participant = self.registry.get_participant(room_id, connection_id)
        await self.broadcast_to_room(
            room_id,
            protocol.build_message(protocol.PARTICIPANT_JOINED, **participant.to_dict()),
            exclude_connection_id=connection_id,
        )

    async def handle_leave(self, connection_id: str, data: Dict[str, Any]):
        if self._drop_if_invalid(connection_id, data, ['roomId']):
            return
        room_id = str(data['roomId'])
        if self.registry.get_participant(room_id, connection_id) is None:
            return
        await self._leave(connection_id, room_id)

    async def _leave(self, connection_id: str, room_id: str):
        remaining = self.registry.leave(room_id, connection_id)
        self.log_info(f"📤 [Relay] Connection {connection_id} left room {room_id}", {
            "remaining": remaining
        })
        if remaining:
            await self.broadcast_to_room(
                room_id,
                protocol.build_message(protocol.PARTICIPANT_LEFT, connectionId=connection_id),
            )
        else:
            self._last_chat_timestamp.pop(room_id, None)

    async def handle_session_description(self, connection_id: str, data: Dict[str, Any]):
        """Forward an offer or answer verbatim to its target."""
        if self._drop_if_invalid(connection_id, data, ['targetConnectionId']):
            return
        message = dict(data)
        message['fromConnectionId'] = connection_id
        await self._route(data['targetConnectionId'], message)

    async def handle_ice_candidate(self, connection_id: str, data: Dict[str, Any]):
        if self._drop_if_invalid(connection_id, data, ['targetConnectionId', 'candidate']):
            return
        message = protocol.build_message(
            protocol.ICE_CANDIDATE,
            candidate=data['candidate'],
            fromConnectionId=connection_id,
        )
        await self._route(data['targetConnectionId'], message)

    async def _route(self, target_connection_id: str, message: Dict[str, Any]):
        if not self.registry.contains_connection(target_connection_id):
            self.log_debug(f"Dropping {message['action']} for absent target", {
                "from": message.get('fromConnectionId'),
                "target": target_connection_id
            })
            return
        await self.send_to(target_connection_id, message)

    async def handle_chat(self, connection_id: str, data: Dict[str, Any]):
        if self._drop_if_invalid(connection_id, data, ['roomId', 'message']):
            return

        room_id = str(data['roomId'])
        participant = self.registry.get_participant(room_id, connection_id)
        message = protocol.build_message(
            protocol.CHAT_MESSAGE,
            roomId=room_id,
            connectionId=connection_id,
            userId=data.get('userId') or (participant.user_id if participant else None),
            displayName=participant.display_name if participant else "Anonymous",
            message=data['message'],
            timestamp=self._next_chat_timestamp(room_id),
        )
        await self.broadcast_to_room(room_id, message)

    def _next_chat_timestamp(self, room_id: str) -> int:
        """Epoch milliseconds, never going backwards within a room."""
        timestamp = max(int(time.time() * 1000), self._last_chat_timestamp.get(room_id, 0))
        if self.registry.get_room(room_id) is not None:
            self._last_chat_timestamp[room_id] = timestamp
        return timestamp

    async def handle_list_rooms(self, connection_id: str, data: Dict[str, Any]):
        await self.send_to(
            connection_id,
            protocol.build_message(protocol.ROOMS_LIST, rooms=self.registry.list_rooms()),
        )

    async def send_to(self, connection_id: str, message: Dict[str, Any]) -> bool:
        """Send a message to a single connection. Returns False when it could not be delivered."""
        send = self.connections.get(connection_id)
        if send is None:
            self.log_debug(f"Cannot send message: connection not found", {
                "connection_id": connection_id,
                "action": message.get('action')
            })
            return False

        try:
            await send(message)
            return True
        except Exception as e:
            self.log_warning(f"Failed to send message to connection", {
                "connection_id": connection_id,
                "action": message.get('action'),
                "error": str(e),
                "error_type": type(e).__name__
            })
            return False

    async def broadcast_to_room(self, room_id: str, message: Dict[str, Any],
                                exclude_connection_id: Optional[str] = None) -> int:
        """Send a message to every member of a room. Returns the number of deliveries."""
        room = self.registry.get_room(room_id)
        if room is None:
            return 0
        targets = [cid for cid in room.participants if cid != exclude_connection_id]
        return await self._send_many(targets, message)

    async def _send_many(self, connection_ids: Iterable[str], message: Dict[str, Any]) -> int:
        results = await asyncio.gather(*(self.send_to(cid, message) for cid in connection_ids))
        return sum(1 for delivered in results if delivered)

    def get_status(self) -> Dict[str, Any]:
        return {
            'connections': len(self.connections),
            'rooms': self.registry.room_count,
            'room_list': self.registry.list_rooms(),
        }

"""
Conference client: the relay connection, the peer connection manager and
local media for one participant.
"""
import asyncio
from typing import Any, Callable, Dict, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed

from ..core import protocol
from ..core.config import ClientConfig
from ..core.exceptions import MediaAcquisitionError, MessageError, SignalingError
from ..core.logging import LoggerMixin, debug_log
from .media_control import MediaCapture, MediaControl, PlayerMediaCapture
from .peer_manager import PeerConnectionManager


class ConferenceClient(LoggerMixin):
    """Joins a room through the relay and maintains a full mesh of peer links."""

    def __init__(self, config: Optional[ClientConfig] = None,
                 capture: Optional[MediaCapture] = None,
                 pc_factory: Optional[Callable[[], Any]] = None):
        super().__init__()
        self.config = config or ClientConfig()
        self.capture = capture or PlayerMediaCapture(self.config)
        self.pc_factory = pc_factory

        self.websocket = None
        self.connection_id: Optional[str] = None
        self.peer_manager: Optional[PeerConnectionManager] = None
        self.media: Optional[MediaControl] = None

        self.room_id: Optional[str] = None
        self.participants: Dict[str, Dict[str, Any]] = {}

        self._listener_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self.event_callbacks: Dict[str, Set[Callable]] = {
            'connected': set(),
            'participant_joined': set(),
            'participant_left': set(),
            'chat': set(),
            'rooms': set(),
            'media_error': set(),
        }

        self.handlers = {
            protocol.ROOM_PARTICIPANTS: self._on_room_participants,
            protocol.PARTICIPANT_JOINED: self._on_participant_joined,
            protocol.PARTICIPANT_LEFT: self._on_participant_left,
            protocol.OFFER: self._on_offer,
            protocol.ANSWER: self._on_answer,
            protocol.ICE_CANDIDATE: self._on_ice_candidate,
            protocol.CHAT_MESSAGE: self._on_chat_message,
            protocol.ROOMS_LIST: self._on_rooms_list,
        }

    def on(self, event: str, callback: Callable):
        """Register a callback for a client event."""
        if event not in self.event_callbacks:
            raise ValueError(f"Unknown event: {event}")
        self.event_callbacks[event].add(callback)

    async def connect(self):
        """Open the relay connection and wait for the relay-assigned connection id."""
        try:
            self.websocket = await websockets.connect(
                self.config.signaling_url,
                ping_interval=30,
                ping_timeout=10,
                close_timeout=10
            )
            welcome = protocol.decode_message(
                await asyncio.wait_for(self.websocket.recv(), self.config.negotiation_timeout)
            )
        except (OSError, asyncio.TimeoutError, ConnectionClosed, MessageError) as e:
            raise SignalingError(
                "Cannot connect to signaling relay",
                {"url": self.config.signaling_url, "error": str(e), "error_type": type(e).__name__}
            ) from e

        if welcome.get('action') != protocol.CONNECTED or not welcome.get('connectionId'):
            raise SignalingError("Unexpected welcome message", {"message": welcome})

        self.connection_id = welcome['connectionId']
        self.peer_manager = PeerConnectionManager(
            self.connection_id, self.send, self.config, pc_factory=self.pc_factory
        )
        self.media = MediaControl(self.peer_manager, self.capture)
        self._listener_task = asyncio.create_task(self._listen())

        debug_log(f"🔌 [Client] Connected to relay", {
            "url": self.config.signaling_url,
            "connection_id": self.connection_id
        })
        self._emit('connected', self.connection_id)

    async def send(self, message: Dict[str, Any]):
        if self.websocket is None:
            raise SignalingError("Not connected to signaling relay")
        await self.websocket.send(protocol.encode_message(message))

    async def join(self, room_id: str, user_id: Optional[str] = None,
                   display_name: Optional[str] = None, audio: bool = True, video: bool = True):
        """Capture local media and join a room.

        A capture failure is reported through ``media_error`` and the client
        joins receive-only.
        """
        if self.peer_manager is None:
            await self.connect()
        if self.room_id is not None and self.room_id != room_id:
            await self.leave()

        if (audio or video) and not self.media.is_started:
            try:
                await self.media.start(audio=audio, video=video)
            except MediaAcquisitionError as e:
                self.log_error(f"Media acquisition failed, joining receive-only", {"error": str(e)})
                self._emit('media_error', e)

        self.room_id = room_id
        self.peer_manager.join_room(room_id)
        await self.send(protocol.build_message(
            protocol.JOIN_ROOM,
            roomId=room_id,
            userId=user_id,
            displayName=display_name,
        ))

    async def send_chat(self, message: str):
        if self.room_id is None:
            raise SignalingError("Join a room before sending chat messages")
        await self.send(protocol.build_message(protocol.CHAT_MESSAGE, roomId=self.room_id, message=message))

    async def list_rooms(self):
        await self.send(protocol.build_message(protocol.LIST_ROOMS))

    async def leave(self):
        """Leave the current room. Safe to call repeatedly."""
        room_id = self.room_id
        self.room_id = None
        self.participants.clear()

        if room_id is not None and self.websocket is not None:
            try:
                await self.send(protocol.build_message(protocol.LEAVE_ROOM, roomId=room_id))
            except ConnectionClosed:
                self.log_warning(f"Relay connection already closed while leaving", {"room_id": room_id})

        if self.media is not None:
            self.media.stop()
        if self.peer_manager is not None:
            await self.peer_manager.leave_room()

    async def close(self):
        await self.leave()
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
        for task in list(self._tasks):
            task.cancel()
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None

    # Media shortcuts

    def toggle_audio(self) -> bool:
        return self.media.toggle_audio()

    def toggle_video(self) -> bool:
        return self.media.toggle_video()

    async def start_screen_share(self):
        try:
            return await self.media.start_screen_share()
        except MediaAcquisitionError as e:
            self.log_error(f"Screen share failed", {"error": str(e)})
            self._emit('media_error', e)
            return None

    def stop_screen_share(self):
        self.media.stop_screen_share()

    # Inbound messages

    async def _listen(self):
        try:
            async for raw in self.websocket:
                try:
                    data = protocol.decode_message(raw)
                except MessageError as e:
                    self.log_warning(f"Dropping invalid relay message", {"error": str(e)})
                    continue
                self._dispatch(data)
        except ConnectionClosed as e:
            self.log_warning(f"Relay connection closed", {"reason": str(e)})

    def _dispatch(self, data: Dict[str, Any]):
        handler = self.handlers.get(data['action'])
        if handler is None:
            self.log_debug(f"No handler for relay message", {"action": data['action']})
            return
        # Each message runs in its own task so one stalled negotiation never blocks another
        task = asyncio.create_task(self._run_handler(handler, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_handler(self, handler, data: Dict[str, Any]):
        try:
            await handler(data)
        except Exception as e:
            self.log_error(f"Error handling relay message", {
                "action": data.get('action'),
                "error": str(e),
                "error_type": type(e).__name__
            })

    async def _on_room_participants(self, data):
        participants = [p for p in data.get('participants') or [] if isinstance(p, dict)]
        for participant in participants:
            self.participants[participant.get('connectionId')] = participant
            self._emit('participant_joined', participant)
        await self.peer_manager.handle_roster(participants)

    async def _on_participant_joined(self, data):
        participant = {k: v for k, v in data.items() if k != 'action'}
        self.participants[participant.get('connectionId')] = participant
        self._emit('participant_joined', participant)
        await self.peer_manager.handle_participant_discovered(participant.get('connectionId'))

    async def _on_participant_left(self, data):
        remote_id = data.get('connectionId')
        participant = self.participants.pop(remote_id, {'connectionId': remote_id})
        await self.peer_manager.handle_participant_left(remote_id)
        self._emit('participant_left', participant)

    async def _on_offer(self, data):
        await self.peer_manager.handle_offer(data.get('fromConnectionId'), data.get('sdp'))

    async def _on_answer(self, data):
        await self.peer_manager.handle_answer(data.get('fromConnectionId'), data.get('sdp'))

    async def _on_ice_candidate(self, data):
        await self.peer_manager.handle_ice_candidate(data.get('fromConnectionId'), data.get('candidate'))

    async def _on_chat_message(self, data):
        self._emit('chat', {k: v for k, v in data.items() if k != 'action'})

    async def _on_rooms_list(self, data):
        self._emit('rooms', data.get('rooms') or [])

    def _emit(self, event: str, payload: Any):
        for callback in list(self.event_callbacks.get(event, ())):
            try:
                callback(payload)
            except Exception as e:
                self.log_error(f"Error in event callback", {"event": event, "error": str(e)})


async def run_client(config: ClientConfig, room_id: str, display_name: Optional[str],
                     audio: bool, video: bool):
    """Join a room and print chat until interrupted; stdin lines are sent as chat."""
    client = ConferenceClient(config)
    client.on('chat', lambda chat: print(f"[{chat.get('displayName')}] {chat.get('message')}"))
    client.on('participant_joined', lambda p: print(f"* {p.get('displayName')} joined"))
    client.on('participant_left', lambda p: print(f"* {p.get('displayName', p.get('connectionId'))} left"))
    client.on('media_error', lambda e: print(f"! media unavailable: {e}"))

    await client.connect()
    await client.join(room_id, display_name=display_name, audio=audio, video=video)

    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, input)
            if line.strip():
                await client.send_chat(line.strip())
    except EOFError:
        pass
    finally:
        await client.close()


def main(argv=None):
    """``huddle-join`` console script."""
    import argparse

    parser = argparse.ArgumentParser(description="Join a Huddle room")
    parser.add_argument("room", help="room id to join")
    parser.add_argument("--name", help="display name")
    parser.add_argument("--url", help="signaling relay WebSocket URL")
    parser.add_argument("--no-audio", action="store_true")
    parser.add_argument("--no-video", action="store_true")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    from ..core.logging import setup_logging
    setup_logging(level=args.log_level, log_file="huddle_client.log")

    config = ClientConfig()
    if args.url:
        config.signaling_url = args.url

    try:
        asyncio.run(run_client(config, args.room, args.name, not args.no_audio, not args.no_video))
    except KeyboardInterrupt:
        pass

"""
Relay module for Huddle.
Tracks room membership and routes signaling messages between clients.
"""

from .room_registry import Participant, Room, RoomRegistry
from .signaling_relay import SignalingRelay
from .server import create_app

__all__ = [
    'Participant',
    'Room',
    'RoomRegistry',
    'SignalingRelay',
    'create_app',
]

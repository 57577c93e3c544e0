"""
WebRTC module for Huddle.
Handles peer links, their negotiation, local media and the conference client.
"""

from .peer_link import LinkState, PeerLink
from .peer_manager import PeerConnectionManager
from .media_control import MediaCapture, MediaControl, PlayerMediaCapture, ToggleableTrack
from .client import ConferenceClient

__all__ = [
    'LinkState',
    'PeerLink',
    'PeerConnectionManager',
    'MediaCapture',
    'MediaControl',
    'PlayerMediaCapture',
    'ToggleableTrack',
    'ConferenceClient'
]

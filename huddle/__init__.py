"""
Huddle: multi-party video rooms over a full mesh of WebRTC peer connections.
"""

__version__ = "0.1.0"

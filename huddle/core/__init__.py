"""
Core module for Huddle.
Contains configuration, logging, the signaling protocol and common utilities.
"""

from .config import ServerConfig, ClientConfig
from .logging import setup_logging, debug_log, LoggerMixin
from .exceptions import (
    HuddleError,
    SignalingError,
    MessageError,
    NegotiationError,
    InvalidTransitionError,
    MediaError,
    MediaAcquisitionError,
)

__all__ = [
    'ServerConfig',
    'ClientConfig',
    'setup_logging',
    'debug_log',
    'LoggerMixin',
    'HuddleError',
    'SignalingError',
    'MessageError',
    'NegotiationError',
    'InvalidTransitionError',
    'MediaError',
    'MediaAcquisitionError',
]

"""
Custom exception classes for Huddle.
"""


class HuddleError(Exception):
    """Base exception for Huddle."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{super().__str__()} - {self.details}"
        return super().__str__()


class SignalingError(HuddleError):
    """Raised when the signaling channel cannot be used."""
    pass


class MessageError(HuddleError):
    """Raised when a signaling message cannot be decoded."""
    pass


class NegotiationError(HuddleError):
    """Raised when negotiation with one peer fails."""
    pass


class InvalidTransitionError(NegotiationError):
    """Raised when a PeerLink is asked to make a transition its state forbids."""

    def __init__(self, remote_connection_id: str, current: str, requested: str):
        super().__init__(
            f"Invalid PeerLink transition {current} -> {requested}",
            {"remote_connection_id": remote_connection_id}
        )
        self.current = current
        self.requested = requested


class MediaError(HuddleError):
    """Raised when there's a local media error."""
    pass


class MediaAcquisitionError(MediaError):
    """Raised when camera, microphone or screen capture is denied or unavailable."""
    pass

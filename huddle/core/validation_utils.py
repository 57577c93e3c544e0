"""
Validation utilities for signaling messages.
"""

from typing import Dict, Any, List, Optional


class ValidationUtils:
    """Common validation utilities."""

    @staticmethod
    def validate_required_fields(data: Dict[str, Any], required_fields: List[str]) -> Optional[str]:
        """Validate that all required fields are present and non-empty in the data."""
        missing_fields = [
            field for field in required_fields
            if field not in data or data[field] is None or data[field] == ""
        ]
        if missing_fields:
            return f"Missing required fields: {', '.join(missing_fields)}"
        return None

    @staticmethod
    def validate_message(data: Any) -> Optional[str]:
        """Validate the envelope of a decoded signaling message."""
        if not isinstance(data, dict):
            return f"Message must be an object, got {type(data).__name__}"
        if not isinstance(data.get('action'), str) or not data['action']:
            return "Message missing action field"
        return None

    @staticmethod
    def validate_session_description(sdp: Any) -> Optional[str]:
        """Validate an offer/answer payload before it reaches the peer connection."""
        if not isinstance(sdp, dict):
            return "Session description must be an object"
        if sdp.get('type') not in ('offer', 'answer'):
            return f"Invalid session description type: {sdp.get('type')}"
        if not isinstance(sdp.get('sdp'), str) or not sdp['sdp']:
            return "Session description has no SDP"
        return None

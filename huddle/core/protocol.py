"""
Signaling message kinds and envelope helpers shared by the relay and the client.

Every message is a JSON object. The ``action`` field is the kind tag, the
other fields are the kind-specific payload.
"""
import json
from typing import Any, Dict

from .exceptions import MessageError
from .validation_utils import ValidationUtils

# Relay -> client
CONNECTED = 'connected'
ROOM_PARTICIPANTS = 'room-participants'
PARTICIPANT_JOINED = 'participant-joined'
PARTICIPANT_LEFT = 'participant-left'
ROOMS_LIST = 'rooms-list'

# Client -> relay
JOIN_ROOM = 'join-room'
LEAVE_ROOM = 'leave-room'
LIST_ROOMS = 'list-rooms'

# Both directions
OFFER = 'offer'
ANSWER = 'answer'
ICE_CANDIDATE = 'ice-candidate'
CHAT_MESSAGE = 'chat-message'

NEGOTIATION_ACTIONS = (OFFER, ANSWER, ICE_CANDIDATE)


def build_message(action: str, **fields: Any) -> Dict[str, Any]:
    """Create a message envelope."""
    message = {'action': action}
    message.update(fields)
    return message


def encode_message(message: Dict[str, Any]) -> str:
    return json.dumps(message)


def decode_message(raw: Any) -> Dict[str, Any]:
    """Decode a text frame into a message envelope, raising MessageError when malformed."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MessageError("Failed to parse message as JSON", {"error": str(e)}) from e

    error = ValidationUtils.validate_message(data)
    if error:
        raise MessageError(error)
    return data

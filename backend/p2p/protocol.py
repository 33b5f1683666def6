"""
Wire protocol for controller <-> player sessions.

Every frame is a JSON object ``{"type": ..., "payload": ...}`` sent as a
websocket text message. Payload field names are camelCase on the wire.
"""

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ProtocolError(ValueError):
    """Raised when an inbound frame is not a valid message envelope."""


class WireModel(BaseModel):
    """Base for models that cross the wire or hit disk with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MessageType(str, Enum):
    """The closed set of message types understood by this protocol version."""
    PAIR_REQUEST = "pair_request"
    PAIR_RESPONSE = "pair_response"
    PLAYBACK = "playback"
    AUDIO = "audio"
    VIDEO = "video"
    SUBTITLE = "subtitle"
    WINDOW = "window"
    SHORTCUT = "shortcut"
    OPEN = "open"
    PROFILE_SYNC = "profile_sync"
    STATE_UPDATE = "state_update"


# Forwarded verbatim to the playback engine on the player side
COMMAND_TYPES = frozenset({
    MessageType.PLAYBACK,
    MessageType.AUDIO,
    MessageType.VIDEO,
    MessageType.SUBTITLE,
    MessageType.WINDOW,
    MessageType.SHORTCUT,
    MessageType.OPEN,
})

# Accepted before a session has been paired
PAIRING_TYPES = frozenset({MessageType.PAIR_REQUEST, MessageType.PAIR_RESPONSE})


class Message(BaseModel):
    """A single protocol frame. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    type: str
    payload: Any = None

    @classmethod
    def build(cls, msg_type: MessageType, payload: Any = None) -> "Message":
        if isinstance(payload, WireModel):
            payload = payload.to_wire()
        return cls(type=msg_type.value, payload=payload)

    @property
    def known_type(self) -> MessageType | None:
        try:
            return MessageType(self.type)
        except ValueError:
            return None


def encode_message(message: Message) -> str:
    """Serialize a message to its JSON text frame."""
    body = {"type": message.type}
    if message.payload is not None:
        body["payload"] = message.payload
    return json.dumps(body)


def decode_message(raw: str | bytes) -> Message:
    """
    Parse a JSON text frame into a Message.

    Raises:
        ProtocolError: the frame is not JSON, not an object, or has no
            string ``type``.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Malformed JSON frame: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Frame is not a JSON object")
    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ProtocolError("Frame has no message type")

    return Message(type=msg_type, payload=data.get("payload"))

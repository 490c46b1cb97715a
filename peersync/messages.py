"""Wire format for messages exchanged between peers."""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .clock import LogicalClock
from .errors import MessageDecodeError


class MessageType(Enum):
    """Kinds of peer messages."""

    STATE_UPDATE = "state:update"
    STATE_REQUEST = "state:request"
    STATE_RESPONSE = "state:response"
    CLOCK_SYNC = "vector:sync"
    HEARTBEAT = "peer:heartbeat"


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclass
class PeerMessage:
    """A message between peers.

    The timestamp is advisory only and never used for ordering.
    """

    type: MessageType
    sender: str
    clock: LogicalClock
    payload: Any = None
    to: str | None = None  # None means broadcast
    timestamp: int = field(default_factory=now_ms)

    @property
    def is_broadcast(self) -> bool:
        return self.to is None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire dictionary."""
        data: dict[str, Any] = {
            "type": self.type.value,
            "from": self.sender,
        }
        if self.to is not None:
            data["to"] = self.to
        data["payload"] = self.payload
        data["clock"] = self.clock.to_dict()
        data["timestamp"] = self.timestamp
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> "PeerMessage":
        """Create from a wire dictionary.

        Raises:
            MessageDecodeError: If a required field is missing or invalid,
                or the type is unknown.
        """
        if not isinstance(data, dict):
            raise MessageDecodeError(f"Message must be an object, got {type(data).__name__}")

        try:
            message_type = MessageType(data.get("type"))
        except ValueError:
            raise MessageDecodeError(f"Unknown message type: {data.get('type')!r}") from None

        sender = data.get("from")
        if not isinstance(sender, str) or not sender:
            raise MessageDecodeError("Message is missing 'from'")

        if "clock" not in data:
            raise MessageDecodeError("Message is missing 'clock'")
        clock = LogicalClock.from_dict(data["clock"])

        to = data.get("to")
        if to is not None and not isinstance(to, str):
            raise MessageDecodeError(f"Invalid 'to': {to!r}")

        timestamp = data.get("timestamp", 0)
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise MessageDecodeError(f"Invalid 'timestamp': {timestamp!r}")

        return cls(
            type=message_type,
            sender=sender,
            clock=clock,
            payload=data.get("payload"),
            to=to,
            timestamp=int(timestamp),
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "PeerMessage":
        """Decode a JSON-encoded message."""
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MessageDecodeError(f"Invalid JSON: {e}") from e
        return cls.from_dict(data)


def decode_message(raw: Any) -> PeerMessage:
    """Decode a message from a PeerMessage, wire dict, or JSON text."""
    if isinstance(raw, PeerMessage):
        return raw
    if isinstance(raw, (str, bytes, bytearray)):
        return PeerMessage.from_json(raw)
    return PeerMessage.from_dict(raw)

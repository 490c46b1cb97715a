"""Engine events and a small callback registry."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from .clock import LogicalClock

logger = logging.getLogger(__name__)


class EngineEvent(Enum):
    """Events emitted by the reconciliation engine."""

    MESSAGE_SEND = "message:send"
    STATE_CHANGED = "state:changed"
    CONFLICT_DETECTED = "conflict:detected"
    CONFLICT_RESOLVED = "conflict:resolved"
    PEER_JOINED = "peer:joined"
    PEER_LEFT = "peer:left"
    SYNC_REQUESTED = "sync:requested"
    SYNC_COMPLETED = "sync:completed"


@dataclass
class StateChanged:
    """A peer's state changed (local writes use the local peer id)."""

    peer_id: str
    state: dict[str, Any]
    clock: LogicalClock


@dataclass
class PeerJoined:
    peer_id: str


@dataclass
class PeerLeft:
    peer_id: str


Listener = Callable[[Any], None]


class EventEmitter:
    """Registry of listeners keyed by EngineEvent.

    Listeners run synchronously in registration order. A failing listener
    is logged and does not prevent the remaining listeners from running.
    """

    def __init__(self):
        self._listeners: dict[EngineEvent, list[Listener]] = {}

    def on(self, event: EngineEvent, listener: Listener) -> Callable[[], None]:
        """Register a listener.

        Returns:
            A callable that removes the listener again.
        """
        self._listeners.setdefault(EngineEvent(event), []).append(listener)
        return lambda: self.off(event, listener)

    def off(self, event: EngineEvent, listener: Listener) -> None:
        """Remove a listener. Unknown listeners are ignored."""
        listeners = self._listeners.get(EngineEvent(event), [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: EngineEvent, data: Any = None) -> None:
        # Copy so listeners may unsubscribe while being called
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(data)
            except Exception:
                logger.exception(f"Listener for {event.value} failed")

    def listener_count(self, event: EngineEvent | None = None) -> int:
        if event is None:
            return sum(len(v) for v in self._listeners.values())
        return len(self._listeners.get(event, []))

    def clear(self) -> None:
        self._listeners.clear()

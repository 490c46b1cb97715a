"""Causal state reconciliation for leaderless peer networks.

Peers track causality with logical clocks and reconcile divergent copies
of shared state deterministically, without a global clock or arbiter.
"""

from .clock import LogicalClock, Ordering
from .engine import ReconciliationEngine
from .errors import (
    ClockDecodeError,
    ConfigurationError,
    EngineClosedError,
    MessageDecodeError,
    PeerSyncError,
)
from .events import EngineEvent, PeerJoined, PeerLeft, StateChanged
from .messages import MessageType, PeerMessage
from .resolution import (
    ConflictCandidate,
    ConflictResolution,
    ResolutionStrategy,
    StateConflict,
)

__version__ = "0.1.0"

__all__ = [
    "ClockDecodeError",
    "ConfigurationError",
    "ConflictCandidate",
    "ConflictResolution",
    "EngineClosedError",
    "EngineEvent",
    "LogicalClock",
    "MessageDecodeError",
    "MessageType",
    "Ordering",
    "PeerJoined",
    "PeerLeft",
    "PeerMessage",
    "PeerSyncError",
    "ReconciliationEngine",
    "ResolutionStrategy",
    "StateChanged",
    "StateConflict",
]

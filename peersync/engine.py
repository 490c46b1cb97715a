"""Reconciliation engine: causal state sync and conflict resolution.

The engine never performs I/O. Outbound messages are emitted as
MESSAGE_SEND events for a transport to deliver, and inbound messages are
handed in through handle_message().
"""

import logging
from typing import Any, Callable

from .clock import LogicalClock
from .errors import EngineClosedError, MessageDecodeError
from .events import EngineEvent, EventEmitter, Listener, PeerJoined, PeerLeft, StateChanged
from .messages import MessageType, PeerMessage, decode_message, now_ms
from .resolution import (
    ConflictCandidate,
    ConflictResolver,
    ResolutionStrategy,
    Resolver,
    StateConflict,
)
from .timer import SyncTimer

logger = logging.getLogger(__name__)

_STATE_BEARING = (MessageType.STATE_UPDATE, MessageType.STATE_RESPONSE)


class ReconciliationEngine:
    """Tracks local and peer clocks and reconciles divergent state.

    All methods must be called from a single thread or event loop.
    """

    def __init__(
        self,
        peer_id: str,
        strategy: ResolutionStrategy | str = ResolutionStrategy.CLOCK_DOMINANT,
        sync_interval: float = 5.0,
        resolver: Resolver | None = None,
    ):
        """Initialize the engine.

        Args:
            peer_id: Identifier of the local peer.
            strategy: Conflict resolution strategy.
            sync_interval: Seconds between CLOCK_SYNC broadcasts once
                start() is called.
            resolver: Resolver callable for the custom strategy.

        Raises:
            ConfigurationError: If the strategy selection is invalid or
                sync_interval is not positive.
            ValueError: If peer_id is empty.
        """
        if not peer_id:
            raise ValueError("peer_id must be a non-empty string")

        self._peer_id = peer_id
        self._resolver = ConflictResolver(strategy, resolver)
        self._timer = SyncTimer(self.sync_with_peers, sync_interval)
        self._events = EventEmitter()
        self._closed = False

        self._local_clock = LogicalClock()
        self._local_state: dict[str, Any] = {}
        self._peer_clocks: dict[str, LogicalClock] = {}
        self._peer_states: dict[str, dict[str, Any]] = {}
        self._known_peers: set[str] = set()
        self._last_seen: dict[str, int] = {}

        self._handlers: dict[MessageType, Callable[[PeerMessage], None]] = {
            MessageType.STATE_UPDATE: self._handle_state_update,
            MessageType.STATE_REQUEST: self._handle_state_request,
            MessageType.STATE_RESPONSE: self._handle_state_response,
            MessageType.CLOCK_SYNC: self._handle_clock_sync,
            MessageType.HEARTBEAT: self._handle_heartbeat,
        }

        self._conflicts_detected = 0
        self._messages_dropped = 0

    @property
    def peer_id(self) -> str:
        return self._peer_id

    @property
    def strategy(self) -> ResolutionStrategy:
        return self._resolver.strategy

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def known_peers(self) -> set[str]:
        return set(self._known_peers)

    # ==================== Events ====================

    def on(self, event: EngineEvent, listener: Listener) -> Callable[[], None]:
        """Subscribe to an engine event.

        Returns:
            A callable that unsubscribes the listener.
        """
        return self._events.on(event, listener)

    def off(self, event: EngineEvent, listener: Listener) -> None:
        self._events.off(event, listener)

    # ==================== Lifecycle ====================

    def start(self) -> None:
        """Start periodic clock sync. Requires a running event loop."""
        self._ensure_open()
        self._timer.start()
        logger.info(f"Engine {self._peer_id} started (strategy={self.strategy.value})")

    def stop_sync_timer(self) -> None:
        """Stop periodic clock sync without shutting the engine down."""
        self._timer.cancel()

    def shutdown(self) -> None:
        """Cancel the timer, drop peer bookkeeping and detach listeners.

        Repeated calls are no-ops.
        """
        if self._closed:
            return
        self._closed = True
        self._timer.cancel()
        self._peer_clocks.clear()
        self._peer_states.clear()
        self._known_peers.clear()
        self._last_seen.clear()
        self._events.clear()
        logger.info(f"Engine {self._peer_id} shut down")

    async def aclose(self) -> None:
        """Shut down and wait for the sync timer task to finish."""
        self.shutdown()
        await self._timer.wait_closed()

    def _ensure_open(self) -> None:
        if self._closed:
            raise EngineClosedError(f"Engine {self._peer_id} has been shut down")

    # ==================== Local operations ====================

    def update_state(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Apply a local write and broadcast it.

        Args:
            fields: Fields shallow-merged into the local state.

        Returns:
            Copy of the new local state.
        """
        self._ensure_open()

        self._local_clock.increment(self._peer_id)
        self._local_state = {**self._local_state, **fields}

        self._send(self._build_message(MessageType.STATE_UPDATE, payload=self.get_state()))
        self._events.emit(
            EngineEvent.STATE_CHANGED,
            StateChanged(
                peer_id=self._peer_id,
                state=self.get_state(),
                clock=self._local_clock.clone(),
            ),
        )
        return self.get_state()

    def request_state(self, peer_id: str | None = None) -> PeerMessage:
        """Ask a peer (or every peer) for its current state."""
        self._ensure_open()
        message = self._build_message(MessageType.STATE_REQUEST, to=peer_id)
        self._send(message)
        return message

    def heartbeat(self) -> PeerMessage:
        """Broadcast a liveness heartbeat."""
        self._ensure_open()
        message = self._build_message(MessageType.HEARTBEAT)
        self._send(message)
        return message

    def sync_with_peers(self) -> PeerMessage | None:
        """Broadcast the local clock to every known peer.

        Returns:
            The CLOCK_SYNC message, or None when skipped.
        """
        if self._closed or not self._known_peers:
            return None

        self._events.emit(EngineEvent.SYNC_REQUESTED)
        message = self._build_message(MessageType.CLOCK_SYNC)
        self._send(message)
        self._events.emit(EngineEvent.SYNC_COMPLETED)
        return message

    # ==================== Peer management ====================

    def add_peer(self, peer_id: str, clock: LogicalClock | None = None) -> bool:
        """Add a peer to the reconciliation group.

        Args:
            peer_id: Peer to add.
            clock: Optional initial clock for the peer.

        Returns:
            True if the peer was not known before.
        """
        self._ensure_open()
        if peer_id == self._peer_id:
            return False

        if clock is not None:
            self._peer_clocks[peer_id] = clock.clone()

        if peer_id in self._known_peers:
            return False

        self._known_peers.add(peer_id)
        logger.info(f"Peer joined: {peer_id}")
        self._events.emit(EngineEvent.PEER_JOINED, PeerJoined(peer_id))
        return True

    def remove_peer(self, peer_id: str) -> bool:
        """Remove a peer and discard its clock and snapshot.

        The local clock is left untouched.

        Returns:
            True if the peer was known.
        """
        if self._closed:
            return False

        was_known = peer_id in self._known_peers
        self._known_peers.discard(peer_id)
        self._peer_clocks.pop(peer_id, None)
        self._peer_states.pop(peer_id, None)
        self._last_seen.pop(peer_id, None)

        if was_known:
            logger.info(f"Peer left: {peer_id}")
            self._events.emit(EngineEvent.PEER_LEFT, PeerLeft(peer_id))
        return was_known

    # ==================== Inbound messages ====================

    def handle_message(self, raw: Any) -> bool:
        """Dispatch an inbound message.

        Args:
            raw: A PeerMessage, a wire dict, or JSON text.

        Returns:
            True if the message was processed, False if it was dropped.
        """
        if self._closed:
            return False

        try:
            message = decode_message(raw)
        except MessageDecodeError as e:
            self._messages_dropped += 1
            logger.debug(f"Dropping malformed message: {e}")
            return False

        if message.sender == self._peer_id:
            logger.debug("Dropping message from self")
            return False
        if message.to is not None and message.to != self._peer_id:
            logger.debug(f"Dropping message addressed to {message.to}")
            return False
        if message.type in _STATE_BEARING and not isinstance(message.payload, dict):
            self._messages_dropped += 1
            logger.debug(f"Dropping {message.type.value} without a state payload")
            return False

        if message.sender not in self._known_peers:
            self.add_peer(message.sender)
        self._last_seen[message.sender] = now_ms()

        logger.debug(f"Handling {message.type.value} from {message.sender}")
        self._handlers[message.type](message)
        return True

    def _handle_state_update(self, message: PeerMessage) -> None:
        sender = message.sender
        new_clock = message.clock
        payload = message.payload

        previous_clock = self._peer_clocks.get(sender)
        self._peer_clocks[sender] = new_clock.clone()
        self._local_clock.merge(new_clock)

        if previous_clock is not None and previous_clock.is_concurrent(new_clock):
            conflict = StateConflict(
                candidates=[
                    ConflictCandidate(sender, dict(payload), new_clock.clone()),
                    ConflictCandidate(self._peer_id, self.get_state(), self._local_clock.clone()),
                ]
            )
            self._conflicts_detected += 1
            logger.warning(
                f"Conflict detected with {sender}: "
                f"previous={previous_clock.to_dict()} new={new_clock.to_dict()}"
            )
            self._events.emit(EngineEvent.CONFLICT_DETECTED, conflict)
            self._resolve(conflict)
        else:
            self._peer_states[sender] = dict(payload)

        self._events.emit(
            EngineEvent.STATE_CHANGED,
            StateChanged(peer_id=sender, state=dict(payload), clock=new_clock.clone()),
        )

    def _handle_state_request(self, message: PeerMessage) -> None:
        self._send(
            self._build_message(
                MessageType.STATE_RESPONSE,
                payload=self.get_state(),
                to=message.sender,
            )
        )

    def _handle_state_response(self, message: PeerMessage) -> None:
        self._handle_state_update(message)

    def _handle_clock_sync(self, message: PeerMessage) -> None:
        self._local_clock.merge(message.clock)
        self._peer_clocks[message.sender] = message.clock.clone()

    def _handle_heartbeat(self, message: PeerMessage) -> None:
        # Last-seen time is recorded for every dispatched message
        pass

    def _resolve(self, conflict: StateConflict) -> None:
        resolution = self._resolver.resolve(conflict)

        self._local_state = dict(resolution.resolved_state)
        self._local_clock = resolution.resolved_clock.clone()

        logger.info(
            f"Conflict resolved by {resolution.strategy.value}: "
            f"winner={resolution.winner} clock={resolution.resolved_clock.to_dict()}"
        )
        self._events.emit(EngineEvent.CONFLICT_RESOLVED, resolution)

    # ==================== Outbound ====================

    def _build_message(
        self,
        message_type: MessageType,
        payload: Any = None,
        to: str | None = None,
    ) -> PeerMessage:
        return PeerMessage(
            type=message_type,
            sender=self._peer_id,
            clock=self._local_clock.clone(),
            payload=payload,
            to=to,
        )

    def _send(self, message: PeerMessage) -> None:
        self._events.emit(EngineEvent.MESSAGE_SEND, message)

    def build_state_response(self, to: str | None = None) -> PeerMessage:
        """Build (without sending) a STATE_RESPONSE carrying the local state."""
        return self._build_message(MessageType.STATE_RESPONSE, payload=self.get_state(), to=to)

    # ==================== Accessors ====================

    def get_state(self) -> dict[str, Any]:
        return dict(self._local_state)

    def get_peer_state(self, peer_id: str) -> dict[str, Any] | None:
        state = self._peer_states.get(peer_id)
        return dict(state) if state is not None else None

    def get_all_peer_states(self) -> dict[str, dict[str, Any]]:
        return {peer_id: dict(state) for peer_id, state in self._peer_states.items()}

    def get_clock(self) -> LogicalClock:
        return self._local_clock.clone()

    def get_peer_clock(self, peer_id: str) -> LogicalClock | None:
        clock = self._peer_clocks.get(peer_id)
        return clock.clone() if clock is not None else None

    def get_peer_last_seen(self, peer_id: str) -> int | None:
        """Epoch millis of the last message received from a peer."""
        return self._last_seen.get(peer_id)

    def get_stats(self) -> dict[str, Any]:
        """Get engine statistics.

        Returns:
            Dictionary with clock, peer and conflict counters.
        """
        return {
            "peer_id": self._peer_id,
            "strategy": self.strategy.value,
            "clock": self._local_clock.to_dict(),
            "known_peers": sorted(self._known_peers),
            "peer_states": len(self._peer_states),
            "conflicts_detected": self._conflicts_detected,
            "messages_dropped": self._messages_dropped,
            "sync_ticks": self._timer.tick_count,
            "closed": self._closed,
        }

"""Tests for the reconciliation engine."""

import asyncio

import pytest

from peersync.clock import LogicalClock
from peersync.engine import ReconciliationEngine
from peersync.errors import ConfigurationError, EngineClosedError
from peersync.events import EngineEvent
from peersync.messages import MessageType, PeerMessage
from peersync.resolution import ResolutionStrategy


def make_message(
    message_type: MessageType,
    sender: str,
    clock: dict[str, int],
    payload=None,
    to: str | None = None,
) -> PeerMessage:
    return PeerMessage(
        type=message_type,
        sender=sender,
        clock=LogicalClock(clock),
        payload=payload,
        to=to,
    )


def state_update(sender: str, clock: dict[str, int], payload: dict) -> PeerMessage:
    return make_message(MessageType.STATE_UPDATE, sender, clock, payload)


class Recorder:
    """Collects emitted events in order."""

    def __init__(self, engine: ReconciliationEngine):
        self.events: list[tuple[EngineEvent, object]] = []
        for event in EngineEvent:
            engine.on(event, lambda data, event=event: self.events.append((event, data)))

    def of(self, event: EngineEvent) -> list:
        return [data for kind, data in self.events if kind is event]

    @property
    def kinds(self) -> list[EngineEvent]:
        return [kind for kind, _ in self.events]


@pytest.fixture
def engine():
    """Create an engine with the clock-dominant strategy."""
    engine = ReconciliationEngine("local", strategy=ResolutionStrategy.CLOCK_DOMINANT)
    yield engine
    engine.shutdown()


@pytest.fixture
def recorder(engine):
    return Recorder(engine)


class TestConstruction:
    """Tests for engine construction."""

    def test_defaults(self, engine):
        """Test a new engine starts empty."""
        assert engine.peer_id == "local"
        assert engine.strategy is ResolutionStrategy.CLOCK_DOMINANT
        assert engine.get_state() == {}
        assert len(engine.get_clock()) == 0
        assert engine.known_peers == set()

    def test_strategy_from_string(self):
        """Test strategies can be selected by name."""
        engine = ReconciliationEngine("local", strategy="last_write_wins")
        assert engine.strategy is ResolutionStrategy.LAST_WRITE_WINS

    def test_invalid_strategy_fails_fast(self):
        """Test an unknown strategy raises at construction."""
        with pytest.raises(ConfigurationError):
            ReconciliationEngine("local", strategy="coin_flip")

    def test_custom_strategy_requires_resolver(self):
        """Test the custom strategy needs a resolver callable."""
        with pytest.raises(ConfigurationError):
            ReconciliationEngine("local", strategy=ResolutionStrategy.CUSTOM)

    def test_empty_peer_id_rejected(self):
        """Test an empty peer id is rejected."""
        with pytest.raises(ValueError):
            ReconciliationEngine("")

    def test_non_positive_interval_rejected(self):
        """Test the sync interval must be positive."""
        with pytest.raises(ConfigurationError):
            ReconciliationEngine("local", sync_interval=0)


class TestLocalWrites:
    """Tests for update_state."""

    def test_update_state_increments_clock(self, engine):
        """Test each local write advances the local counter."""
        engine.update_state({"x": 1})
        engine.update_state({"y": 2})

        assert engine.get_clock().to_dict() == {"local": 2}

    def test_update_state_shallow_merges(self, engine):
        """Test fields are shallow-merged into the local state."""
        engine.update_state({"x": 1, "nested": {"a": 1}})
        state = engine.update_state({"y": 2, "nested": {"b": 2}})

        assert state == {"x": 1, "y": 2, "nested": {"b": 2}}
        assert engine.get_state() == state

    def test_update_state_broadcasts_then_notifies(self, engine, recorder):
        """Test a write emits STATE_UPDATE before StateChanged."""
        engine.update_state({"x": 1})

        assert recorder.kinds == [EngineEvent.MESSAGE_SEND, EngineEvent.STATE_CHANGED]

        sent = recorder.of(EngineEvent.MESSAGE_SEND)[0]
        assert sent.type is MessageType.STATE_UPDATE
        assert sent.sender == "local"
        assert sent.to is None
        assert sent.payload == {"x": 1}
        assert sent.clock.to_dict() == {"local": 1}

        changed = recorder.of(EngineEvent.STATE_CHANGED)[0]
        assert changed.peer_id == "local"
        assert changed.state == {"x": 1}
        assert changed.clock.to_dict() == {"local": 1}

    def test_get_state_returns_copy(self, engine):
        """Test callers cannot mutate the local state through accessors."""
        engine.update_state({"x": 1})
        engine.get_state()["x"] = 99
        engine.get_clock().increment("local")

        assert engine.get_state() == {"x": 1}
        assert engine.get_clock().get("local") == 1


class TestInboundStateUpdates:
    """Tests for inbound STATE_UPDATE and STATE_RESPONSE."""

    def test_first_contact_accepted_without_conflict(self, engine, recorder):
        """Test a never-seen peer's update is stored directly."""
        assert engine.handle_message(state_update("P", {"P": 1}, {"x": 5}))

        assert recorder.of(EngineEvent.CONFLICT_DETECTED) == []
        assert engine.get_peer_state("P") == {"x": 5}
        assert engine.get_peer_clock("P").to_dict() == {"P": 1}

    def test_unknown_sender_is_auto_added(self, engine, recorder):
        """Test the first message from a peer adds it to the group."""
        engine.handle_message(state_update("P", {"P": 1}, {}))

        assert engine.known_peers == {"P"}
        assert [e.peer_id for e in recorder.of(EngineEvent.PEER_JOINED)] == ["P"]
        assert engine.get_peer_last_seen("P") is not None

    def test_inbound_clock_is_merged(self, engine):
        """Test the sender's clock is merged into the local clock."""
        engine.update_state({"x": 1})
        engine.handle_message(state_update("P", {"P": 3, "Q": 1}, {}))

        assert engine.get_clock().to_dict() == {"P": 3, "Q": 1, "local": 1}

    def test_ordered_updates_replace_snapshot(self, engine, recorder):
        """Test causally ordered updates from a peer are applied directly."""
        engine.handle_message(state_update("P", {"P": 1}, {"x": 1}))
        engine.handle_message(state_update("P", {"P": 2}, {"x": 2}))

        assert recorder.of(EngineEvent.CONFLICT_DETECTED) == []
        assert engine.get_peer_state("P") == {"x": 2}

    def test_state_changed_emitted_for_peer(self, engine, recorder):
        """Test inbound updates notify with the peer's payload and clock."""
        engine.handle_message(state_update("P", {"P": 1}, {"x": 1}))

        changed = recorder.of(EngineEvent.STATE_CHANGED)[-1]
        assert changed.peer_id == "P"
        assert changed.state == {"x": 1}
        assert changed.clock.to_dict() == {"P": 1}

    def test_state_response_handled_like_update(self, engine):
        """Test STATE_RESPONSE follows the STATE_UPDATE path."""
        message = make_message(
            MessageType.STATE_RESPONSE, "P", {"P": 2}, {"doc": "v2"}, to="local"
        )

        assert engine.handle_message(message)
        assert engine.get_peer_state("P") == {"doc": "v2"}
        assert engine.get_clock().get("P") == 2

    def test_wire_dict_and_json_accepted(self, engine):
        """Test messages can be delivered as dicts or JSON."""
        message = state_update("P", {"P": 1}, {"x": 1})

        assert engine.handle_message(message.to_dict())
        assert engine.handle_message(
            state_update("P", {"P": 2}, {"x": 2}).to_json()
        )
        assert engine.get_peer_state("P") == {"x": 2}


class TestConflicts:
    """Tests for conflict detection and resolution."""

    def test_concurrent_update_peer_wins_tie_break(self, engine, recorder):
        """Test the peer wins the tie-break against our post-merge clock.

        The update dominates our clock before the merge. After merging, the
        local candidate carries an equal clock, so neither dominates and the
        first candidate, the sender, is chosen.
        """
        engine.add_peer("P", LogicalClock({"P": 2}))
        engine.update_state({"x": 1})

        # Concurrent with the recorded {P: 2}, and has seen our write
        engine.handle_message(state_update("P", {"P": 1, "local": 1}, {"x": 2}))

        assert len(recorder.of(EngineEvent.CONFLICT_DETECTED)) == 1
        resolution = recorder.of(EngineEvent.CONFLICT_RESOLVED)[0]
        assert resolution.resolved_state == {"x": 2}
        assert resolution.strategy is ResolutionStrategy.CLOCK_DOMINANT
        assert resolution.winner == "P"
        assert engine.get_state() == {"x": 2}
        assert engine.get_clock().to_dict() == {"P": 1, "local": 1}

    def test_concurrent_update_local_wins_when_ahead(self, engine, recorder):
        """Test local state survives when the local clock dominates."""
        engine.add_peer("P", LogicalClock({"P": 2}))
        engine.update_state({"x": 1})
        engine.update_state({"x": 3})

        engine.handle_message(state_update("P", {"P": 1, "local": 1}, {"x": 2}))

        resolution = recorder.of(EngineEvent.CONFLICT_RESOLVED)[0]
        assert resolution.winner == "local"
        assert engine.get_state() == {"x": 3}
        assert engine.get_clock().to_dict() == {"P": 1, "local": 2}

    def test_conflict_record_candidates(self, engine, recorder):
        """Test the conflict lists the peer first and local second."""
        engine.add_peer("P", LogicalClock({"P": 2}))
        engine.update_state({"x": 1})

        engine.handle_message(state_update("P", {"P": 1, "local": 1}, {"x": 2}))

        conflict = recorder.of(EngineEvent.CONFLICT_DETECTED)[0]
        assert [c.peer_id for c in conflict.candidates] == ["P", "local"]
        assert conflict.candidates[0].state == {"x": 2}
        assert conflict.candidates[1].state == {"x": 1}
        assert conflict.candidates[1].clock.to_dict() == {"P": 1, "local": 1}

    def test_conflict_event_order(self, engine, recorder):
        """Test detection, then resolution, then StateChanged."""
        engine.add_peer("P", LogicalClock({"P": 2}))
        engine.handle_message(state_update("P", {"Q": 1}, {"x": 2}))

        kinds = [
            k for k in recorder.kinds
            if k in (
                EngineEvent.CONFLICT_DETECTED,
                EngineEvent.CONFLICT_RESOLVED,
                EngineEvent.STATE_CHANGED,
            )
        ]
        assert kinds == [
            EngineEvent.CONFLICT_DETECTED,
            EngineEvent.CONFLICT_RESOLVED,
            EngineEvent.STATE_CHANGED,
        ]

    def test_conflicting_update_does_not_replace_snapshot(self, engine):
        """Test the peer snapshot is only replaced on non-conflicting updates."""
        engine.handle_message(state_update("P", {"P": 3}, {"x": "first"}))
        engine.handle_message(state_update("P", {"Q": 1}, {"x": "second"}))

        assert engine.get_peer_state("P") == {"x": "first"}
        # The stored clock is still replaced wholesale
        assert engine.get_peer_clock("P").to_dict() == {"Q": 1}

    def test_strategies_can_disagree(self):
        """Test last-write-wins and clock-dominant pick different winners."""
        results = {}
        for strategy in (ResolutionStrategy.CLOCK_DOMINANT, ResolutionStrategy.LAST_WRITE_WINS):
            engine = ReconciliationEngine("local", strategy=strategy)
            engine.update_state({"x": "local-1"})
            engine.update_state({"x": "local-2"})
            engine.handle_message(state_update("P", {"P": 4, "Q": 1}, {"x": "p-old"}))
            engine.handle_message(state_update("P", {"P": 5}, {"x": "p-new"}))
            results[strategy] = engine.get_state()
            engine.shutdown()

        assert results[ResolutionStrategy.CLOCK_DOMINANT] == {"x": "local-2"}
        assert results[ResolutionStrategy.LAST_WRITE_WINS] == {"x": "p-new"}

    def test_custom_resolver(self):
        """Test a custom resolver picks the winner."""
        def prefer_local(conflict):
            return next(c for c in conflict.candidates if c.peer_id == "local")

        engine = ReconciliationEngine(
            "local", strategy=ResolutionStrategy.CUSTOM, resolver=prefer_local
        )
        recorder = Recorder(engine)
        engine.add_peer("P", LogicalClock({"P": 2}))
        engine.update_state({"x": 1})
        engine.handle_message(state_update("P", {"P": 1, "local": 1}, {"x": 2}))

        resolution = recorder.of(EngineEvent.CONFLICT_RESOLVED)[0]
        assert resolution.strategy is ResolutionStrategy.CUSTOM
        assert engine.get_state() == {"x": 1}

    def test_stats_count_conflicts(self, engine):
        """Test conflicts are counted in stats."""
        engine.handle_message(state_update("P", {"P": 3}, {}))
        engine.handle_message(state_update("P", {"Q": 1}, {}))

        assert engine.get_stats()["conflicts_detected"] == 1


class TestOtherMessages:
    """Tests for STATE_REQUEST, CLOCK_SYNC and HEARTBEAT."""

    def test_state_request_gets_addressed_response(self, engine, recorder):
        """Test a state request is answered only to the requester."""
        engine.update_state({"x": 1})

        engine.handle_message(make_message(MessageType.STATE_REQUEST, "P", {}))

        response = recorder.of(EngineEvent.MESSAGE_SEND)[-1]
        assert response.type is MessageType.STATE_RESPONSE
        assert response.to == "P"
        assert response.payload == {"x": 1}
        assert response.clock.to_dict() == {"local": 1}

    def test_clock_sync_merges_and_replaces(self, engine, recorder):
        """Test CLOCK_SYNC merges into local but replaces the peer's clock."""
        engine.handle_message(state_update("P", {"P": 3, "Q": 2}, {"x": 1}))
        sent_before = len(recorder.of(EngineEvent.MESSAGE_SEND))

        engine.handle_message(make_message(MessageType.CLOCK_SYNC, "P", {"P": 4}))

        assert engine.get_peer_clock("P").to_dict() == {"P": 4}
        assert engine.get_clock().to_dict() == {"P": 4, "Q": 2}
        assert engine.get_peer_state("P") == {"x": 1}
        assert len(recorder.of(EngineEvent.MESSAGE_SEND)) == sent_before

    def test_heartbeat_records_last_seen(self, engine):
        """Test heartbeats mark the peer as seen without changing clocks."""
        engine.handle_message(make_message(MessageType.HEARTBEAT, "P", {"P": 9}))

        assert engine.get_peer_last_seen("P") is not None
        assert engine.get_clock().to_dict() == {}

    def test_request_state_and_heartbeat_send(self, engine, recorder):
        """Test outbound request and heartbeat messages."""
        engine.request_state("P")
        engine.heartbeat()

        request, beat = recorder.of(EngineEvent.MESSAGE_SEND)
        assert request.type is MessageType.STATE_REQUEST
        assert request.to == "P"
        assert beat.type is MessageType.HEARTBEAT
        assert beat.to is None


class TestDroppedMessages:
    """Tests for messages dropped at the dispatch boundary."""

    @pytest.mark.parametrize(
        "raw",
        [
            {"type": "state:teleport", "from": "P", "clock": {}, "payload": {}},
            {"type": "state:update", "from": "P", "payload": {}},
            {"type": "state:update", "from": "P", "clock": {"P": "one"}, "payload": {}},
            "{broken json",
            42,
        ],
    )
    def test_malformed_messages_dropped(self, engine, recorder, raw):
        """Test malformed messages are dropped silently."""
        assert engine.handle_message(raw) is False
        assert recorder.events == []
        assert engine.known_peers == set()
        assert engine.get_stats()["messages_dropped"] == 1

    def test_state_update_without_dict_payload_dropped(self, engine):
        """Test state-bearing messages need an object payload."""
        assert engine.handle_message(state_update("P", {"P": 1}, None)) is False
        assert engine.get_peer_state("P") is None

    def test_message_from_self_dropped(self, engine):
        """Test echoed messages from the local peer are ignored."""
        assert engine.handle_message(state_update("local", {"local": 7}, {})) is False
        assert engine.get_clock().to_dict() == {}

    def test_message_for_other_peer_dropped(self, engine):
        """Test unicast messages for someone else are ignored."""
        message = make_message(MessageType.STATE_REQUEST, "P", {}, to="someone-else")
        assert engine.handle_message(message) is False


class TestPeerManagement:
    """Tests for add_peer and remove_peer."""

    def test_add_peer_emits_once(self, engine, recorder):
        """Test PeerJoined fires only for new peers."""
        assert engine.add_peer("P") is True
        assert engine.add_peer("P") is False

        assert len(recorder.of(EngineEvent.PEER_JOINED)) == 1
        assert engine.known_peers == {"P"}

    def test_add_peer_seeds_clock(self, engine):
        """Test an initial clock is stored for the peer."""
        seed = LogicalClock({"P": 3})
        engine.add_peer("P", seed)
        seed.increment("P")

        assert engine.get_peer_clock("P").to_dict() == {"P": 3}

    def test_add_self_ignored(self, engine):
        """Test the local peer is never tracked as a remote peer."""
        assert engine.add_peer("local") is False
        assert engine.known_peers == set()

    def test_remove_peer_discards_history(self, engine, recorder):
        """Test removal drops clock and snapshot but keeps the local clock."""
        engine.handle_message(state_update("P", {"P": 3}, {"x": 1}))

        assert engine.remove_peer("P") is True

        assert engine.known_peers == set()
        assert engine.get_peer_clock("P") is None
        assert engine.get_peer_state("P") is None
        assert engine.get_peer_last_seen("P") is None
        assert engine.get_clock().get("P") == 3
        assert [e.peer_id for e in recorder.of(EngineEvent.PEER_LEFT)] == ["P"]

    def test_remove_unknown_peer(self, engine, recorder):
        """Test removing an unknown peer is a quiet no-op."""
        assert engine.remove_peer("ghost") is False
        assert recorder.of(EngineEvent.PEER_LEFT) == []

    def test_stale_message_after_removal_is_first_contact(self, engine, recorder):
        """Test a removed peer's stale update is not checked against old history."""
        engine.handle_message(state_update("P", {"P": 3}, {"x": "new"}))
        engine.remove_peer("P")

        # {Q: 1} would be concurrent with the forgotten {P: 3}
        engine.handle_message(state_update("P", {"Q": 1}, {"x": "stale"}))

        assert recorder.of(EngineEvent.CONFLICT_DETECTED) == []
        assert engine.get_peer_state("P") == {"x": "stale"}


class TestSync:
    """Tests for clock-only sync broadcasts."""

    def test_sync_skipped_without_peers(self, engine, recorder):
        """Test no CLOCK_SYNC is sent when nobody is listening."""
        assert engine.sync_with_peers() is None
        assert recorder.events == []

    def test_sync_broadcasts_clock(self, engine, recorder):
        """Test CLOCK_SYNC carries the local clock to everyone."""
        engine.add_peer("P")
        engine.update_state({"x": 1})
        recorder.events.clear()

        message = engine.sync_with_peers()

        assert recorder.kinds == [
            EngineEvent.SYNC_REQUESTED,
            EngineEvent.MESSAGE_SEND,
            EngineEvent.SYNC_COMPLETED,
        ]
        assert message.type is MessageType.CLOCK_SYNC
        assert message.to is None
        assert message.clock.to_dict() == {"local": 1}

    def test_sync_does_not_change_state(self, engine):
        """Test a sync tick leaves clock and state alone."""
        engine.add_peer("P")
        engine.update_state({"x": 1})

        engine.sync_with_peers()

        assert engine.get_clock().to_dict() == {"local": 1}
        assert engine.get_state() == {"x": 1}

    @pytest.mark.asyncio
    async def test_timer_broadcasts_periodically(self):
        """Test start() drives periodic CLOCK_SYNC broadcasts."""
        engine = ReconciliationEngine("local", sync_interval=0.01)
        sent = []
        engine.on(EngineEvent.MESSAGE_SEND, sent.append)
        engine.add_peer("P")

        engine.start()
        await asyncio.sleep(0.1)
        await engine.aclose()

        assert sent
        assert all(m.type is MessageType.CLOCK_SYNC for m in sent)

    @pytest.mark.asyncio
    async def test_no_ticks_after_shutdown(self):
        """Test no sync tick fires once shutdown returns."""
        engine = ReconciliationEngine("local", sync_interval=0.01)
        engine.add_peer("P")
        engine.start()
        await asyncio.sleep(0.05)

        engine.shutdown()
        ticks = engine.get_stats()["sync_ticks"]
        await asyncio.sleep(0.05)

        assert engine.get_stats()["sync_ticks"] == ticks
        await engine.aclose()

    @pytest.mark.asyncio
    async def test_timer_restarts_after_stop(self):
        """Test start() after stop_sync_timer() resumes periodic sync."""
        engine = ReconciliationEngine("local", sync_interval=0.01)
        engine.add_peer("P")

        engine.start()
        engine.stop_sync_timer()
        engine.start()
        await asyncio.sleep(0.1)

        assert engine.get_stats()["sync_ticks"] > 0
        await engine.aclose()


class TestShutdown:
    """Tests for engine shutdown."""

    def test_shutdown_is_idempotent(self, engine):
        """Test repeated shutdown calls are safe."""
        engine.shutdown()
        engine.shutdown()
        assert engine.closed

    def test_shutdown_releases_peers_and_listeners(self, engine):
        """Test peer maps and listeners are released."""
        received = []
        engine.on(EngineEvent.STATE_CHANGED, received.append)
        engine.handle_message(state_update("P", {"P": 1}, {"x": 1}))
        received.clear()

        engine.shutdown()

        assert engine.known_peers == set()
        assert engine.get_all_peer_states() == {}
        assert engine.handle_message(state_update("P", {"P": 2}, {"x": 2})) is False
        assert received == []

    def test_local_write_after_shutdown_raises(self, engine):
        """Test writes after shutdown raise EngineClosedError."""
        engine.shutdown()
        with pytest.raises(EngineClosedError):
            engine.update_state({"x": 1})

    def test_sync_after_shutdown_is_noop(self, engine):
        """Test a tick racing shutdown sends nothing."""
        engine.add_peer("P")
        engine.shutdown()
        assert engine.sync_with_peers() is None


class TestListeners:
    """Tests for event subscription."""

    def test_unsubscribe(self, engine):
        """Test the callable returned by on() removes the listener."""
        received = []
        unsubscribe = engine.on(EngineEvent.STATE_CHANGED, received.append)

        engine.update_state({"x": 1})
        unsubscribe()
        engine.update_state({"x": 2})

        assert len(received) == 1

    def test_off(self, engine):
        """Test off() removes a listener."""
        received = []
        engine.on(EngineEvent.PEER_JOINED, received.append)
        engine.off(EngineEvent.PEER_JOINED, received.append)

        engine.add_peer("P")

        assert received == []

    def test_failing_listener_does_not_block_others(self, engine):
        """Test a listener error is contained."""
        received = []

        def broken(_):
            raise RuntimeError("boom")

        engine.on(EngineEvent.STATE_CHANGED, broken)
        engine.on(EngineEvent.STATE_CHANGED, received.append)

        engine.update_state({"x": 1})

        assert len(received) == 1
        assert engine.get_state() == {"x": 1}


class TestIsolation:
    """Tests that engines share nothing."""

    def test_engines_are_independent(self):
        """Test two engines keep separate clocks and peers."""
        a = ReconciliationEngine("a")
        b = ReconciliationEngine("b")

        a.update_state({"x": 1})
        a.add_peer("c")

        assert b.get_clock().to_dict() == {}
        assert b.known_peers == set()
        assert b.get_state() == {}

    def test_two_engines_converge_through_messages(self):
        """Test wiring two engines together exchanges state."""
        a = ReconciliationEngine("a")
        b = ReconciliationEngine("b")
        a.on(EngineEvent.MESSAGE_SEND, b.handle_message)
        b.on(EngineEvent.MESSAGE_SEND, a.handle_message)

        a.update_state({"doc": "hello"})
        b.update_state({"doc": "world"})

        assert b.get_peer_state("a") == {"doc": "hello"}
        assert a.get_peer_state("b") == {"doc": "world"}
        assert a.get_clock() == b.get_clock()

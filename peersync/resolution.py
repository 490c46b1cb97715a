"""Conflict records and resolution strategies."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from .clock import LogicalClock
from .errors import ConfigurationError
from .messages import now_ms

logger = logging.getLogger(__name__)


class ResolutionStrategy(Enum):
    """How the engine picks a winner among conflicting states."""

    CLOCK_DOMINANT = "clock_dominant"
    LAST_WRITE_WINS = "last_write_wins"
    CUSTOM = "custom"


@dataclass
class ConflictCandidate:
    """One of the competing states in a conflict."""

    peer_id: str
    state: dict[str, Any]
    clock: LogicalClock


@dataclass
class StateConflict:
    """Two or more states whose clocks are concurrent."""

    candidates: list[ConflictCandidate]
    detected_at: int = field(default_factory=now_ms)


@dataclass
class ConflictResolution:
    """Outcome of resolving a StateConflict."""

    resolved_state: dict[str, Any]
    resolved_clock: LogicalClock
    strategy: ResolutionStrategy
    winner: str
    resolved_at: int = field(default_factory=now_ms)


Resolver = Callable[[StateConflict], ConflictCandidate]


def resolve_clock_dominant(conflict: StateConflict) -> ConflictCandidate:
    """Pick the first candidate whose clock no other candidate dominates.

    Candidates are scanned in order and a later candidate only replaces the
    current winner when its clock strictly happens after it, so ties go to
    the earlier candidate.
    """
    winner = conflict.candidates[0]
    for candidate in conflict.candidates[1:]:
        if candidate.clock.happens_after(winner.clock):
            winner = candidate
    return winner


def resolve_last_write_wins(conflict: StateConflict) -> ConflictCandidate:
    """Pick the candidate holding the highest single counter.

    Counters of different peers are compared as if they were on one scale.
    That is not causally meaningful; it is a cheap recency approximation.
    """
    winner = conflict.candidates[0]
    highest = 0
    for candidate in conflict.candidates:
        for peer_id in candidate.clock.peer_ids():
            value = candidate.clock.get(peer_id)
            if value > highest:
                highest = value
                winner = candidate
    return winner


_BUILTIN_RESOLVERS: dict[ResolutionStrategy, Resolver] = {
    ResolutionStrategy.CLOCK_DOMINANT: resolve_clock_dominant,
    ResolutionStrategy.LAST_WRITE_WINS: resolve_last_write_wins,
}


class ConflictResolver:
    """Applies a configured strategy to conflicts."""

    def __init__(
        self,
        strategy: ResolutionStrategy | str = ResolutionStrategy.CLOCK_DOMINANT,
        custom: Resolver | None = None,
    ):
        """Initialize the resolver.

        Args:
            strategy: Strategy enum or its string value.
            custom: Resolver callable, required for the custom strategy.

        Raises:
            ConfigurationError: If the strategy is unknown, or custom is
                selected without a resolver callable.
        """
        try:
            self.strategy = ResolutionStrategy(strategy)
        except ValueError:
            valid = ", ".join(s.value for s in ResolutionStrategy)
            raise ConfigurationError(
                f"Unknown resolution strategy {strategy!r} (expected one of: {valid})"
            ) from None

        if self.strategy is ResolutionStrategy.CUSTOM:
            if not callable(custom):
                raise ConfigurationError("Custom resolution strategy requires a resolver callable")
            self._resolve = custom
        else:
            if custom is not None:
                logger.warning(
                    f"Custom resolver ignored for strategy {self.strategy.value}"
                )
            self._resolve = _BUILTIN_RESOLVERS[self.strategy]

    def resolve(self, conflict: StateConflict) -> ConflictResolution:
        """Resolve a conflict.

        Raises:
            ValueError: If the conflict has no candidates, or a custom
                resolver returns something that is not one of them.
        """
        if not conflict.candidates:
            raise ValueError("Cannot resolve a conflict without candidates")

        winner = self._resolve(conflict)
        if not any(winner is c for c in conflict.candidates):
            raise ValueError("Resolver must return one of the conflict candidates")

        return ConflictResolution(
            resolved_state=dict(winner.state),
            resolved_clock=winner.clock.clone(),
            strategy=self.strategy,
            winner=winner.peer_id,
        )

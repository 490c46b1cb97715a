"""Logical (vector) clocks for tracking causal order between peers.

Each peer owns one counter. A clock is a mapping of peer id to counter,
where a missing peer id reads as zero.
"""

import logging
from collections.abc import Iterator, Mapping
from enum import Enum
from typing import Any

from .errors import ClockDecodeError

logger = logging.getLogger(__name__)


class Ordering(Enum):
    """Result of comparing two logical clocks."""

    AFTER = "after"
    BEFORE = "before"
    CONCURRENT = "concurrent"  # Also covers identical clocks


class LogicalClock:
    """Mapping of peer id to a monotonically increasing counter.

    Comparison only yields an ordering on strict dominance. Two identical
    clocks compare as CONCURRENT, never as "equal".
    """

    def __init__(self, counters: Mapping[str, int] | None = None):
        """Initialize the clock.

        Args:
            counters: Optional initial counters. The mapping is copied.
        """
        self._counters: dict[str, int] = dict(counters) if counters else {}

    def increment(self, peer_id: str) -> int:
        """Advance the counter for a peer.

        Args:
            peer_id: Peer whose counter to advance.

        Returns:
            The new counter value.
        """
        value = self._counters.get(peer_id, 0) + 1
        self._counters[peer_id] = value
        return value

    def merge(self, other: "LogicalClock") -> None:
        """Take the component-wise maximum with another clock.

        The other clock is only read.
        """
        for peer_id, value in other._counters.items():
            self._counters[peer_id] = max(self._counters.get(peer_id, 0), value)

    def compare(self, other: "LogicalClock") -> Ordering:
        """Compare this clock against another.

        Returns:
            AFTER if this clock dominates, BEFORE if it is dominated,
            CONCURRENT otherwise.
        """
        ahead = False
        behind = False

        for peer_id in self._counters.keys() | other._counters.keys():
            mine = self._counters.get(peer_id, 0)
            theirs = other._counters.get(peer_id, 0)
            if mine > theirs:
                ahead = True
            elif mine < theirs:
                behind = True
            if ahead and behind:
                return Ordering.CONCURRENT

        if ahead:
            return Ordering.AFTER
        if behind:
            return Ordering.BEFORE
        return Ordering.CONCURRENT

    def happens_before(self, other: "LogicalClock") -> bool:
        return self.compare(other) is Ordering.BEFORE

    def happens_after(self, other: "LogicalClock") -> bool:
        return self.compare(other) is Ordering.AFTER

    def is_concurrent(self, other: "LogicalClock") -> bool:
        return self.compare(other) is Ordering.CONCURRENT

    def get(self, peer_id: str) -> int:
        """Get the counter for a peer, 0 if unknown."""
        return self._counters.get(peer_id, 0)

    def set(self, peer_id: str, value: int) -> None:
        """Assign a counter directly.

        No monotonic floor is enforced; this is meant for decoding and tests.
        """
        if value < 0:
            raise ValueError(f"Counter for {peer_id!r} must be non-negative, got {value}")
        self._counters[peer_id] = value

    def clone(self) -> "LogicalClock":
        return LogicalClock(self._counters)

    def peer_ids(self) -> list[str]:
        """Get all peer ids tracked by this clock."""
        return list(self._counters)

    def to_dict(self) -> dict[str, int]:
        """Convert to a plain mapping ordered by peer id."""
        return {peer_id: self._counters[peer_id] for peer_id in sorted(self._counters)}

    @classmethod
    def from_dict(cls, data: Any) -> "LogicalClock":
        """Create a clock from a mapping produced by to_dict().

        Raises:
            ClockDecodeError: If the data is not a mapping of string ids to
                non-negative integers.
        """
        if not isinstance(data, Mapping):
            raise ClockDecodeError(f"Clock must be a mapping, got {type(data).__name__}")

        counters = {}
        for peer_id, value in data.items():
            if not isinstance(peer_id, str):
                raise ClockDecodeError(f"Clock key must be a string, got {peer_id!r}")
            # bool is an int subclass but never a valid counter
            if isinstance(value, bool) or not isinstance(value, int):
                raise ClockDecodeError(f"Counter for {peer_id!r} must be an integer, got {value!r}")
            if value < 0:
                raise ClockDecodeError(f"Counter for {peer_id!r} must be non-negative, got {value}")
            counters[peer_id] = value

        return cls(counters)

    def __len__(self) -> int:
        return len(self._counters)

    def __iter__(self) -> Iterator[str]:
        return iter(self._counters)

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._counters

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LogicalClock):
            return NotImplemented
        keys = self._counters.keys() | other._counters.keys()
        return all(self.get(k) == other.get(k) for k in keys)

    __hash__ = None  # mutable

    def __repr__(self) -> str:
        return f"LogicalClock({self.to_dict()!r})"

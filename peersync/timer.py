"""Periodic timer driving clock-only sync broadcasts."""

import asyncio
import logging
from typing import Callable

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class SyncTimer:
    """Calls a tick function every interval on the running event loop.

    Ticks are synchronous, so once cancel() returns no new tick can start.
    A tick already running on the loop simply finishes. A cancelled timer
    can be started again; the new run gets its own task and stop event.
    """

    def __init__(self, tick: Callable[[], None], interval_seconds: float):
        """Initialize the timer.

        Args:
            tick: Function called on every interval.
            interval_seconds: Seconds between ticks. Must be positive.

        Raises:
            ConfigurationError: If the interval is not positive.
        """
        if interval_seconds <= 0:
            raise ConfigurationError(f"Sync interval must be positive, got {interval_seconds}")
        self.tick = tick
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self.tick_count = 0

    @property
    def running(self) -> bool:
        return (
            self._task is not None
            and not self._task.done()
            and self._stop_event is not None
            and not self._stop_event.is_set()
        )

    def start(self) -> None:
        """Start ticking. Requires a running event loop."""
        if self.running:
            return
        loop = asyncio.get_running_loop()
        # A previous, cancelled run exits on its own stop event
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._loop(self._stop_event))
        logger.debug(f"Sync timer started with {self.interval_seconds}s interval")

    def cancel(self) -> None:
        """Stop the timer. Safe to call repeatedly."""
        if self._stop_event:
            self._stop_event.set()

    async def wait_closed(self) -> None:
        """Wait for the timer task to finish after cancel()."""
        if self._task:
            await self._task
            self._task = None

    async def _loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
                break  # Stop event was set
            except asyncio.TimeoutError:
                pass  # Normal timeout, tick

            if stop_event.is_set():
                break

            try:
                self.tick()
                self.tick_count += 1
            except Exception as e:
                logger.error(f"Sync tick failed: {e}", exc_info=True)

        logger.debug("Sync timer stopped")

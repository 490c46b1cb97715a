"""Tests for the periodic sync timer."""

import asyncio

import pytest

from peersync.errors import ConfigurationError
from peersync.timer import SyncTimer


class TestSyncTimer:
    """Tests for SyncTimer."""

    def test_rejects_non_positive_interval(self):
        """Test the interval must be positive."""
        with pytest.raises(ConfigurationError):
            SyncTimer(lambda: None, 0)

    def test_start_requires_running_loop(self):
        """Test start() outside an event loop raises."""
        timer = SyncTimer(lambda: None, 1.0)
        with pytest.raises(RuntimeError):
            timer.start()

    @pytest.mark.asyncio
    async def test_ticks_until_cancelled(self):
        """Test ticks fire repeatedly and stop after cancel()."""
        ticks = []
        timer = SyncTimer(lambda: ticks.append(1), 0.01)

        timer.start()
        await asyncio.sleep(0.1)
        timer.cancel()
        count = len(ticks)
        await timer.wait_closed()
        await asyncio.sleep(0.05)

        assert count > 0
        assert len(ticks) == count
        assert not timer.running

    @pytest.mark.asyncio
    async def test_cancel_before_first_tick(self):
        """Test cancelling immediately prevents any tick."""
        ticks = []
        timer = SyncTimer(lambda: ticks.append(1), 0.05)

        timer.start()
        timer.cancel()
        await timer.wait_closed()

        assert ticks == []

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self):
        """Test repeated cancel calls are safe."""
        timer = SyncTimer(lambda: None, 0.01)
        timer.start()

        timer.cancel()
        timer.cancel()
        await timer.wait_closed()
        await timer.wait_closed()

        assert not timer.running

    @pytest.mark.asyncio
    async def test_failing_tick_keeps_timer_alive(self):
        """Test an exception in a tick does not stop the timer."""
        calls = []

        def tick():
            calls.append(1)
            raise RuntimeError("boom")

        timer = SyncTimer(tick, 0.01)
        timer.start()
        await asyncio.sleep(0.08)
        timer.cancel()
        await timer.wait_closed()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_task(self):
        """Test a second start() while running is a no-op."""
        timer = SyncTimer(lambda: None, 0.01)
        timer.start()
        task = timer._task

        timer.start()

        assert timer._task is task
        timer.cancel()
        await timer.wait_closed()

    @pytest.mark.asyncio
    async def test_restart_right_after_cancel(self):
        """Test start() directly after cancel() begins a fresh run."""
        ticks = []
        timer = SyncTimer(lambda: ticks.append(1), 0.01)
        timer.start()
        first = timer._task

        timer.cancel()
        timer.start()
        await asyncio.sleep(0.08)

        assert timer._task is not first
        assert timer.running
        assert len(ticks) > 0
        assert first.done()
        timer.cancel()
        await timer.wait_closed()

    @pytest.mark.asyncio
    async def test_restart_after_wait_closed(self):
        """Test a fully stopped timer ticks again once restarted."""
        ticks = []
        timer = SyncTimer(lambda: ticks.append(1), 0.01)
        timer.start()
        timer.cancel()
        await timer.wait_closed()
        assert ticks == []

        timer.start()
        await asyncio.sleep(0.05)
        timer.cancel()
        await timer.wait_closed()

        assert len(ticks) > 0

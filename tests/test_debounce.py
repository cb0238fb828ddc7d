"""Tests for the trailing Debouncer."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from vault_search.index.debounce import Debouncer


class TestDebouncer:
    """Tests for reset/cancel/flush and timer bookkeeping."""

    def test_invalid_delay(self):
        with pytest.raises(ValueError):
            Debouncer(0, lambda: None)

    def test_fires_once_after_reset(self, clock):
        fn = MagicMock()
        debouncer = Debouncer(2.0, fn, timer_factory=clock)

        debouncer.reset()
        assert debouncer.pending
        assert clock.timers[0].interval == 2.0
        assert clock.timers[0].daemon is True

        clock.fire_all()
        fn.assert_called_once()
        assert not debouncer.pending

    def test_reset_restarts_window(self, clock):
        """Repeated resets cancel earlier timers; one call results."""
        fn = MagicMock()
        debouncer = Debouncer(1.0, fn, timer_factory=clock)

        for _ in range(3):
            debouncer.reset()

        assert len(clock.timers) == 3
        assert [t.cancelled for t in clock.timers] == [True, True, False]
        clock.fire_all()
        fn.assert_called_once()

    def test_superseded_timer_does_not_fire(self, clock):
        """A timer that fires after being replaced is ignored."""
        fn = MagicMock()
        debouncer = Debouncer(1.0, fn, timer_factory=clock)

        debouncer.reset()
        first = clock.timers[0]
        debouncer.reset()

        # Simulate the race: the old thread was already running its callback
        first.fn()
        fn.assert_not_called()
        assert debouncer.pending

    def test_cancel(self, clock):
        fn = MagicMock()
        debouncer = Debouncer(1.0, fn, timer_factory=clock)

        debouncer.reset()
        pending_timer = clock.timers[0]
        debouncer.cancel()

        assert pending_timer.cancelled
        assert not debouncer.pending
        pending_timer.fn()
        fn.assert_not_called()

    def test_cancel_without_pending_is_noop(self, clock):
        Debouncer(1.0, MagicMock(), timer_factory=clock).cancel()
        assert clock.timers == []

    def test_flush_runs_immediately(self, clock):
        fn = MagicMock()
        debouncer = Debouncer(1.0, fn, timer_factory=clock)

        debouncer.reset()
        assert debouncer.flush() is True
        fn.assert_called_once()
        assert clock.timers[0].cancelled

        clock.fire_all()
        fn.assert_called_once()

    def test_flush_without_pending(self, clock):
        fn = MagicMock()
        assert Debouncer(1.0, fn, timer_factory=clock).flush() is False
        fn.assert_not_called()

    def test_real_timer(self):
        """Default factory is threading.Timer."""
        fired = threading.Event()
        debouncer = Debouncer(0.01, fired.set)
        debouncer.reset()
        assert fired.wait(timeout=5)

"""Trailing debounce with an explicit timer handle.

Usage:
    debouncer = Debouncer(2.0, flush_pending)
    debouncer.reset()    # (re)start the window
    debouncer.cancel()   # drop the pending call
    debouncer.flush()    # run now if a call is pending

The timer factory is injectable so tests can fire timers by hand
instead of sleeping.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class TimerLike(Protocol):
    """The subset of threading.Timer the debouncer relies on."""

    daemon: bool

    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerLike]


class Debouncer:
    """Runs ``fn`` once, ``delay_seconds`` after the last reset()."""

    def __init__(
        self,
        delay_seconds: float,
        fn: Callable[[], None],
        timer_factory: TimerFactory = threading.Timer,
    ):
        if delay_seconds <= 0:
            raise ValueError(f"delay must be positive, got {delay_seconds}")
        self.delay_seconds = delay_seconds
        self._fn = fn
        self._timer_factory = timer_factory
        self._timer: TimerLike | None = None
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def pending(self) -> bool:
        """Whether a call is scheduled."""
        with self._lock:
            return self._timer is not None

    def reset(self) -> None:
        """Restart the window; the call happens delay_seconds from now."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            generation = self._generation
            timer = self._timer_factory(
                self.delay_seconds, lambda: self._fire(generation)
            )
            timer.daemon = True
            self._timer = timer
            timer.start()

    def cancel(self) -> None:
        """Drop the scheduled call, if any."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._generation += 1

    def flush(self) -> bool:
        """
        Run the scheduled call immediately.

        Returns:
            True if a call was pending and has run
        """
        with self._lock:
            if self._timer is None:
                return False
            self._timer.cancel()
            self._timer = None
            self._generation += 1
        self._fn()
        return True

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A timer cancelled after it began firing must not run
            if generation != self._generation:
                return
            self._timer = None
        self._fn()

"""
Cancellable Timers
==================

Thread-based repeating and one-shot timers used for session verification,
update checks and the delayed startup migration check.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional


class RepeatingTimer:
    """
    Repeating timer built from a chain of daemon ``threading.Timer`` objects.

    Usage:
        timer = RepeatingTimer(300, client.verify, name="verify")
        timer.start()
        ...
        timer.stop()

    ``start()`` on a running timer replaces the pending tick instead of
    adding a second chain. Exceptions raised by the callback are logged and
    do not stop the timer.
    """

    __slots__ = ("_interval", "_callback", "_name", "_timer", "_running", "_lock", "_run_immediately", "_log")

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], object],
        name: str = "timer",
        run_immediately: bool = False,
    ) -> None:
        """
        Initialize the timer.

        Args:
            interval_seconds: Period between ticks
            callback: Function invoked on every tick
            name: Name used for the thread and log lines
            run_immediately: Fire the first tick right away instead of after one period
        """
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._interval = interval_seconds
        self._callback = callback
        self._name = name
        self._timer: Optional[threading.Timer] = None
        self._running = False
        self._lock = threading.Lock()
        self._run_immediately = run_immediately
        self._log = logging.getLogger(f"deviceauth.timers.{name}")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def interval(self) -> float:
        return self._interval

    def start(self) -> None:
        """Start the timer, replacing any pending tick."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._running = True
            self._schedule(0 if self._run_immediately else self._interval)

    def stop(self) -> None:
        """Stop the timer. A tick already executing is allowed to finish."""
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _schedule(self, delay: float) -> None:
        timer = threading.Timer(delay, self._tick)
        timer.daemon = True
        timer.name = f"deviceauth-{self._name}"
        self._timer = timer
        timer.start()

    def _tick(self) -> None:
        if not self._running:
            return
        try:
            self._callback()
        except Exception:
            self._log.exception("Timer callback %s failed", self._name)
        with self._lock:
            if self._running and self._timer is threading.current_thread():
                self._schedule(self._interval)


class OneShotTimer:
    """Cancellable delayed call."""

    __slots__ = ("_timer", "_log")

    def __init__(self, delay_seconds: float, callback: Callable[[], object], name: str = "oneshot") -> None:
        self._log = logging.getLogger(f"deviceauth.timers.{name}")

        def run() -> None:
            try:
                callback()
            except Exception:
                self._log.exception("Delayed call %s failed", name)

        self._timer = threading.Timer(delay_seconds, run)
        self._timer.daemon = True
        self._timer.name = f"deviceauth-{name}"

    def start(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        self._timer.cancel()

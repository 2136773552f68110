"""
Periodic session verification.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Final, Optional

from deviceauth.utils.timers import RepeatingTimer

DEFAULT_VERIFY_INTERVAL: Final[float] = 5 * 60


class VerificationScheduler:
    """
    Calls ``verify`` every interval while running.

    Usage:
        scheduler = VerificationScheduler(client.verify)
        scheduler.start()     # restarting replaces the pending tick
        scheduler.stop()
    """

    __slots__ = ("_verify", "_timer", "_log")

    def __init__(
        self,
        verify: Callable[[], Optional[Dict[str, Any]]],
        interval_seconds: float = DEFAULT_VERIFY_INTERVAL,
    ) -> None:
        self._verify = verify
        self._timer = RepeatingTimer(interval_seconds, self._tick, name="verify")
        self._log = logging.getLogger("deviceauth.scheduler")

    @property
    def is_running(self) -> bool:
        return self._timer.is_running

    @property
    def interval(self) -> float:
        return self._timer.interval

    def start(self) -> None:
        self._timer.start()
        self._log.info("Session verification every %.0fs", self._timer.interval)

    def stop(self) -> None:
        if self._timer.is_running:
            self._log.info("Session verification stopped")
        self._timer.stop()

    def _tick(self) -> None:
        result = self._verify()
        if result is None:
            self._log.warning("Periodic verification failed")
        else:
            self._log.info("Periodic verification succeeded")

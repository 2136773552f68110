"""
Single-Flight Guard
===================

Collapses concurrent calls that share a key into one execution. A caller
that arrives while a call for the same key is outstanding blocks until the
leader finishes and receives the leader's result (or exception).
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Optional, TypeVar

T = TypeVar("T")


class _Call:
    __slots__ = ("done", "result", "error", "waiters")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.waiters = 0


class SingleFlight:
    """
    Per-key call deduplication.

    Usage:
        flight = SingleFlight()
        uid = flight.do("identity-recompute", manager._recompute, True)

    Calls are not reentrant per key: a function running under key K must
    not call ``do(K, ...)`` again on the same thread.
    """

    __slots__ = ("_lock", "_calls")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: Dict[str, _Call] = {}

    def do(self, key: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run fn(*args, **kwargs) unless a call for key is already running.

        Returns:
            The result of the single execution shared by all callers

        Raises:
            Whatever the shared execution raised
        """
        with self._lock:
            call = self._calls.get(key)
            if call is not None:
                call.waiters += 1
                leader = False
            else:
                call = _Call()
                self._calls[key] = call
                leader = True

        if not leader:
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.result

        try:
            call.result = fn(*args, **kwargs)
            return call.result
        except BaseException as exc:
            call.error = exc
            raise
        finally:
            with self._lock:
                del self._calls[key]
            call.done.set()

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._calls

"""
Update Orchestrator
===================

Schedules update checks against a custom feed and reports each phase on
the event stream. Downloading and installing updates is left to the
platform installer.

Phases published under topic ``updater``:
- checking
- available (``version``)
- none (``version``)
- error (``message``)
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Final, Optional

import requests

from deviceauth.core.config import APP_VERSION
from deviceauth.core.events import UPDATER, EventBus
from deviceauth.utils.timers import RepeatingTimer

DEFAULT_CHECK_INTERVAL: Final[float] = 6 * 60 * 60
FEED_TIMEOUT: Final[float] = 15

# Returns the newest published version, or None when the feed lists none
UpdateChecker = Callable[[], Optional[str]]


def _version_key(version: str) -> tuple:
    parts = []
    for part in version.lstrip("vV").split("."):
        digits = "".join(ch for ch in part if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


def is_newer_version(candidate: str, current: str) -> bool:
    """Compare dotted numeric versions ("1.10.0" > "1.9.3")."""
    return _version_key(candidate) > _version_key(current)


class FeedUpdateChecker:
    """Reads ``<feed_url>/latest.json`` (``{"version": "1.2.0"}``)."""

    def __init__(self, feed_url: str, user_agent: str, session: Optional[requests.Session] = None) -> None:
        self._feed_url = feed_url.rstrip("/")
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent})

    @property
    def feed_url(self) -> str:
        return self._feed_url

    def __call__(self) -> Optional[str]:
        response = self._session.get(f"{self._feed_url}/latest.json", timeout=FEED_TIMEOUT)
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError("Update feed returned an unexpected document")
        version = body.get("version")
        return str(version) if version else None


class UpdateOrchestrator:
    """
    Periodic update checks.

    Usage:
        updater = UpdateOrchestrator(bus, FeedUpdateChecker(feed, ua))
        updater.start()     # checks now, then every interval
        updater.stop()

    Without a checker the orchestrator stays idle.
    """

    def __init__(
        self,
        events: EventBus,
        checker: Optional[UpdateChecker] = None,
        current_version: str = APP_VERSION,
        interval_seconds: float = DEFAULT_CHECK_INTERVAL,
    ) -> None:
        self._events = events
        self._checker = checker
        self._current_version = current_version
        self._timer = RepeatingTimer(interval_seconds, self.check, name="update-check", run_immediately=True)
        self._log = logging.getLogger("deviceauth.updater")

    @property
    def enabled(self) -> bool:
        return self._checker is not None

    @property
    def is_running(self) -> bool:
        return self._timer.is_running

    def start(self) -> None:
        if not self.enabled:
            self._log.info("No update feed configured, update checks disabled")
            return
        self._timer.start()

    def stop(self) -> None:
        self._timer.stop()

    def check(self) -> Optional[Dict[str, Any]]:
        """
        Run one update check and publish its phases.

        Returns:
            The final phase payload, or None when disabled
        """
        if self._checker is None:
            return None

        self._publish({"type": "checking"})
        try:
            latest = self._checker()
        except Exception as e:
            self._log.warning("Update check failed: %s", e)
            return self._publish({"type": "error", "message": str(e)})

        if latest and is_newer_version(latest, self._current_version):
            self._log.info("Update available: %s (running %s)", latest, self._current_version)
            return self._publish({"type": "available", "version": latest})

        self._log.debug("No update available")
        return self._publish({"type": "none", "version": self._current_version})

    def _publish(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._events.publish(UPDATER, payload)
        return payload

"""
Tamper-Aware Audit Trail
========================

Append-only, hash-chained record of identity and authentication events.
UIDs are truncated in stored entries; tokens are never recorded.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Final, List, Optional

_GENESIS: Final[str] = "genesis"


class AuditSeverity(Enum):
    """Audit event severity levels."""
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class AuditEventType(Enum):
    """Types of auditable events."""
    # Identity
    UID_DERIVED = "UID_DERIVED"
    UID_FALLBACK = "UID_FALLBACK"
    UID_SNAPSHOT = "UID_SNAPSHOT"
    UID_RESET = "UID_RESET"
    MIGRATION_ACKNOWLEDGED = "MIGRATION_ACKNOWLEDGED"

    # Authentication
    AUTH_SUCCESS = "AUTH_SUCCESS"
    AUTH_FAILURE = "AUTH_FAILURE"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_CLEARED = "SESSION_CLEARED"

    # System
    STARTUP = "STARTUP"
    SHUTDOWN = "SHUTDOWN"
    CONFIG_CHANGED = "CONFIG_CHANGED"


def short_uid(uid: Optional[str]) -> Optional[str]:
    """Truncate a UID for audit entries."""
    if not uid:
        return None
    return uid[:8] + "..." if len(uid) > 8 else uid


@dataclass
class AuditEvent:
    """An auditable event."""
    event_type: AuditEventType
    severity: AuditSeverity
    timestamp: datetime
    uid: Optional[str] = None
    description: str = ""
    details: Dict = field(default_factory=dict)

    event_id: str = field(default="")
    previous_hash: str = field(default="")
    event_hash: str = field(default="")

    def __post_init__(self) -> None:
        if not self.event_id:
            self.event_id = hashlib.sha256(
                f"{self.timestamp.isoformat()}{self.event_type.value}{os.urandom(8).hex()}".encode()
            ).hexdigest()[:16]

    def compute_hash(self, previous_hash: str) -> str:
        """Compute event hash for chain integrity."""
        self.previous_hash = previous_hash

        data = self.to_dict()
        data.pop("event_hash")

        self.event_hash = hashlib.sha256(
            json.dumps(data, sort_keys=True).encode()
        ).hexdigest()

        return self.event_hash

    def to_dict(self) -> Dict:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "uid": short_uid(self.uid),
            "description": self.description,
            "details": self.details,
            "previous_hash": self.previous_hash,
            "event_hash": self.event_hash,
        }


class TamperAwareAuditLog:
    """
    Append-only audit log with tamper detection.

    Features:
    - Chained hashes for integrity
    - JSON Lines format
    - Thread-safe appends
    """

    def __init__(self, log_path: Path) -> None:
        self._log_path = log_path
        self._lock = threading.Lock()
        self._last_hash = _GENESIS
        self._event_count = 0
        self._log = logging.getLogger("deviceauth.audit")

        log_path.parent.mkdir(parents=True, exist_ok=True)
        self._load_chain()

    @property
    def path(self) -> Path:
        return self._log_path

    @property
    def event_count(self) -> int:
        return self._event_count

    def _load_chain(self) -> None:
        """Resume the chain from an existing log file."""
        if not self._log_path.exists():
            return

        try:
            with open(self._log_path, "r", encoding="utf-8") as f:
                for line in f:
                    if line.strip():
                        event = json.loads(line)
                        self._last_hash = event.get("event_hash", self._last_hash)
                        self._event_count += 1
        except (OSError, ValueError) as e:
            # A damaged trail is kept on disk for inspection; appends start a new chain
            self._log.warning("Audit log %s unreadable, starting new chain: %s", self._log_path, e)
            self._last_hash = _GENESIS

    def log(
        self,
        event_type: AuditEventType,
        description: str,
        severity: AuditSeverity = AuditSeverity.INFO,
        uid: Optional[str] = None,
        details: Optional[Dict] = None,
    ) -> str:
        """
        Append an audit event.

        Returns:
            Event ID
        """
        event = AuditEvent(
            event_type=event_type,
            severity=severity,
            timestamp=datetime.now(timezone.utc),
            uid=uid,
            description=description,
            details=details or {},
        )

        with self._lock:
            event.compute_hash(self._last_hash)

            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict()) + "\n")
                f.flush()
                os.fsync(f.fileno())

            self._last_hash = event.event_hash
            self._event_count += 1

        return event.event_id

    def verify_integrity(self) -> tuple[bool, int]:
        """
        Verify log chain integrity.

        Returns:
            Tuple of (is_valid, event_count)
        """
        if not self._log_path.exists():
            return True, 0

        previous_hash = _GENESIS
        count = 0

        try:
            with open(self._log_path, "r", encoding="utf-8") as f:
                for line in f:
                    if not line.strip():
                        continue

                    event = json.loads(line)

                    if event.get("previous_hash", "") != previous_hash:
                        return False, count

                    stored_hash = event.pop("event_hash", "")
                    recomputed = hashlib.sha256(
                        json.dumps(event, sort_keys=True).encode()
                    ).hexdigest()
                    if recomputed != stored_hash:
                        return False, count

                    previous_hash = stored_hash
                    count += 1

            return True, count

        except (OSError, ValueError):
            return False, count

    def get_events(
        self,
        event_type: Optional[AuditEventType] = None,
        limit: int = 100,
    ) -> List[Dict]:
        """Get the most recent events, optionally filtered by type."""
        events: List[Dict] = []

        if not self._log_path.exists():
            return events

        with open(self._log_path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                event = json.loads(line)
                if event_type and event["event_type"] != event_type.value:
                    continue
                events.append(event)

        return events[-limit:]

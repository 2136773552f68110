"""
Device Identity
===============

Derives the durable per-machine UID from the hardware fingerprint and
manages UID migration.

Rules:
- ``uid = sha256(f"{fingerprint}:{salt}")[:32]`` (first 128 bits, hex)
- A stored UID without a stored fingerprint is a legacy UID: it is moved to
  ``previous_uid`` and a new UID is derived
- A forced recompute moves the stored UID to ``previous_uid`` in the same
  transaction that writes the new UID
- ``previous_uid`` is cleared only when the server acknowledges a migration
- Derivation failures never propagate: a ``fallback-<ms>-<random>`` UID is
  returned so startup is never blocked
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Final, Optional, Tuple

from deviceauth.core.config import DEFAULT_UID_SALT
from deviceauth.core.device.hardware_fingerprint import FingerprintCollector
from deviceauth.db.kv_store import (
    KeyValueStore,
    StoreError,
    UID,
    FINGERPRINT,
    FINGERPRINT_SOURCE_COUNT,
    PREVIOUS_UID,
)
from deviceauth.security.audit import AuditEventType, AuditSeverity, TamperAwareAuditLog
from deviceauth.utils.concurrency import SingleFlight


RECOMPUTE_KEY: Final[str] = "identity-recompute"
FALLBACK_PREFIX: Final[str] = "fallback-"
UID_LENGTH: Final[int] = 32


def derive_uid(fingerprint: str, salt: str) -> str:
    """
    Derive the UID for a fingerprint string.

    Pure function: the same fingerprint and salt always give the same
    32-character lowercase hex value.
    """
    digest = hashlib.sha256(f"{fingerprint}:{salt}".encode("utf-8")).hexdigest()
    return digest[:UID_LENGTH]


def make_fallback_uid() -> str:
    return f"{FALLBACK_PREFIX}{int(time.time() * 1000)}-{secrets.token_hex(6)}"


def is_fallback_uid(uid: Optional[str]) -> bool:
    return bool(uid) and uid.startswith(FALLBACK_PREFIX)


@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    """Snapshot of the persisted identity record."""
    uid: Optional[str]
    fingerprint: Optional[str]
    fingerprint_source_count: int
    previous_uid: Optional[str]

    @property
    def is_fallback(self) -> bool:
        return is_fallback_uid(self.uid)

    def __repr__(self) -> str:
        return (
            f"DeviceIdentity(uid={self.uid!r}, sources={self.fingerprint_source_count}, "
            f"previous_uid={self.previous_uid!r})"
        )


@dataclass(frozen=True, slots=True)
class MigrationIntent:
    """Request to move server-side data from ``from_uid`` to ``to_uid``."""
    from_uid: str
    to_uid: str


class IdentityManager:
    """
    Owner of the device UID.

    Usage:
        identity = IdentityManager(store, FingerprintCollector(store), salt)
        uid = identity.get_identity()            # cached after first call
        uid = identity.get_identity(True)        # forced recompute
        uid, changed = identity.rederive()       # forced, keeps previous_uid if unchanged

    Recomputations run under a single-flight guard: concurrent callers share
    one collection and one snapshot of the old UID.
    """

    __slots__ = ("_store", "_collector", "_salt", "_audit", "_flight", "_uid", "_log")

    def __init__(
        self,
        store: KeyValueStore,
        collector: Optional[FingerprintCollector] = None,
        salt: str = DEFAULT_UID_SALT,
        audit: Optional[TamperAwareAuditLog] = None,
        flight: Optional[SingleFlight] = None,
    ) -> None:
        """
        Initialize the identity manager.

        Args:
            store: Persistent store holding the identity record
            collector: Fingerprint collector (defaults to one for this OS)
            salt: Salt mixed into UID derivation
            audit: Optional audit trail
            flight: Single-flight guard, shared when several services coordinate
        """
        self._store = store
        self._collector = collector or FingerprintCollector(store)
        self._salt = salt
        self._audit = audit
        self._flight = flight or SingleFlight()
        self._uid: Optional[str] = None
        self._log = logging.getLogger("deviceauth.identity")

    @property
    def uid(self) -> Optional[str]:
        """In-memory UID, None until first resolved."""
        return self._uid

    @property
    def previous_uid(self) -> Optional[str]:
        return self._store.get(PREVIOUS_UID)

    def identity(self) -> DeviceIdentity:
        data = self._store.snapshot([UID, FINGERPRINT, FINGERPRINT_SOURCE_COUNT, PREVIOUS_UID])
        return DeviceIdentity(
            uid=data.get(UID),
            fingerprint=data.get(FINGERPRINT),
            fingerprint_source_count=int(data.get(FINGERPRINT_SOURCE_COUNT) or 0),
            previous_uid=data.get(PREVIOUS_UID),
        )

    def migration_intent(self) -> Optional[MigrationIntent]:
        """Pending migration, if the stored previous UID differs from the current one."""
        current = self.get_identity()
        previous = self.previous_uid
        if previous and previous != current:
            return MigrationIntent(from_uid=previous, to_uid=current)
        return None

    def get_identity(self, force_recompute: bool = False) -> str:
        """
        Return the device UID.

        Args:
            force_recompute: Re-collect the fingerprint even if a UID is stored

        Returns:
            The UID (never raises; may be a fallback UID)
        """
        if not force_recompute and self._uid:
            return self._uid

        if not force_recompute:
            try:
                stored_uid = self._store.get(UID)
                stored_fingerprint = self._store.get(FINGERPRINT)
            except StoreError as e:
                self._log.warning("Stored identity unreadable: %s", e)
                stored_uid = stored_fingerprint = None

            if stored_uid and stored_fingerprint:
                self._log.debug("Using stored device UID")
                self._uid = stored_uid
                return stored_uid

        uid, _ = self._flight.do(RECOMPUTE_KEY, self._recompute, force_recompute)
        return uid

    def rederive(self) -> Tuple[str, bool]:
        """
        Forced recompute used by the authentication flow.

        When the recomputed UID equals the one it replaces, ``previous_uid``
        is left as it was, so the stored record never ends up with
        ``previous_uid == uid``.

        Returns:
            Tuple of (uid, changed)
        """
        uid, replaced = self._flight.do(RECOMPUTE_KEY, self._recompute, True, True)
        return uid, replaced is not None and uid != replaced

    def acknowledge_migration(self) -> None:
        """Clear ``previous_uid`` after the server confirmed the migration."""
        previous = self._store.get(PREVIOUS_UID)
        if not previous:
            return
        self._store.delete(PREVIOUS_UID)
        self._log.info("Migration from previous UID %s acknowledged", previous)
        self._record(AuditEventType.MIGRATION_ACKNOWLEDGED, "Previous UID cleared", uid=previous)

    def _recompute(self, force: bool, keep_previous_if_unchanged: bool = False) -> Tuple[str, Optional[str]]:
        replaced: Optional[str] = None
        try:
            stored_uid = self._store.get(UID)
            stored_fingerprint = self._store.get(FINGERPRINT)
            pending_previous = self._store.get(PREVIOUS_UID)

            if not force and stored_uid and stored_fingerprint:
                # Another caller finished a recompute while this one waited
                self._uid = stored_uid
                return stored_uid, None

            if stored_uid:
                replaced = stored_uid
                if force:
                    self._log.info("Forced UID recompute, keeping %s for migration", stored_uid)
                else:
                    self._log.info("Legacy UID %s has no fingerprint, upgrading", stored_uid)

            self._log.info("Collecting hardware information")
            fingerprint = self._collector.collect()
            uid = derive_uid(fingerprint.value, self._salt)

            record: Dict[str, Any] = {
                UID: uid,
                FINGERPRINT: fingerprint.value,
                FINGERPRINT_SOURCE_COUNT: fingerprint.source_count,
            }
            remove: Tuple[str, ...] = ()
            if replaced and self._should_snapshot(replaced, uid, pending_previous, keep_previous_if_unchanged):
                record[PREVIOUS_UID] = replaced
            elif pending_previous == uid and (not force or keep_previous_if_unchanged):
                # Hardware came back to the pending UID: nothing left to migrate
                remove = (PREVIOUS_UID,)
            self._store.set_many(record, remove=remove)
            self._uid = uid

            self._log.info("Device UID %s derived from %d source(s)", uid, fingerprint.source_count)
            if PREVIOUS_UID in record:
                self._record(AuditEventType.UID_SNAPSHOT, "UID kept for migration", uid=replaced)
            self._record(
                AuditEventType.UID_DERIVED,
                "Device UID derived",
                uid=uid,
                details={"sources": [s.tag for s in fingerprint.sources], "forced": force},
            )
            return uid, replaced

        except Exception:
            self._log.exception("Device UID derivation failed, using fallback identity")
            return self._fallback(replaced), replaced

    @staticmethod
    def _should_snapshot(
        replaced: str,
        uid: str,
        pending_previous: Optional[str],
        keep_previous_if_unchanged: bool,
    ) -> bool:
        if keep_previous_if_unchanged and replaced == uid:
            return False
        # A fallback UID does not displace a real UID still waiting for migration
        if is_fallback_uid(replaced) and pending_previous:
            return False
        return True

    def _fallback(self, replaced: Optional[str]) -> str:
        fallback = make_fallback_uid()
        values: Dict[str, Any] = {UID: fallback}
        if replaced and not is_fallback_uid(replaced):
            values[PREVIOUS_UID] = replaced
        try:
            # No fingerprint is stored so the next start treats this UID as legacy and re-derives
            self._store.set_many(values, remove=(FINGERPRINT, FINGERPRINT_SOURCE_COUNT))
        except StoreError as e:
            self._log.error("Fallback UID could not be persisted: %s", e)
        self._uid = fallback
        self._log.error("Using fallback device UID %s", fallback)
        self._record(AuditEventType.UID_FALLBACK, "Fallback UID in use", AuditSeverity.WARNING, uid=fallback)
        return fallback

    def _record(
        self,
        event_type: AuditEventType,
        description: str,
        severity: AuditSeverity = AuditSeverity.INFO,
        uid: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self._audit is None:
            return
        try:
            self._audit.log(event_type, description, severity=severity, uid=uid, details=details)
        except OSError as e:
            self._log.warning("Audit entry %s not written: %s", event_type.value, e)

"""
Tests for UID derivation, persistence and migration bookkeeping.
"""

import re
import threading
import time
from unittest.mock import MagicMock

from conftest import StubReader
from deviceauth.core.device.hardware_fingerprint import (
    DeviceFingerprint,
    FingerprintCollector,
    FingerprintSource,
    HardwareSample,
)
from deviceauth.core.device.identity import (
    RECOMPUTE_KEY,
    IdentityManager,
    MigrationIntent,
    derive_uid,
    is_fallback_uid,
)
from deviceauth.db.kv_store import FINGERPRINT, FINGERPRINT_SOURCE_COUNT, PREVIOUS_UID, UID
from deviceauth.security.audit import AuditEventType
from deviceauth.utils.concurrency import SingleFlight


def _fingerprint(value: str) -> DeviceFingerprint:
    return DeviceFingerprint(samples=(HardwareSample(FingerprintSource.CPU, value),))


class TestDeriveUid:

    def test_deterministic(self):
        assert derive_uid("board_uuid:ABC", "salt") == derive_uid("board_uuid:ABC", "salt")

    def test_is_32_lowercase_hex(self):
        assert re.fullmatch(r"[0-9a-f]{32}", derive_uid("board_uuid:ABC", "salt"))

    def test_salt_changes_uid(self):
        assert derive_uid("board_uuid:ABC", "a") != derive_uid("board_uuid:ABC", "b")


class TestIdentityManager:

    def test_first_resolution_persists_record(self, identity, store):
        uid = identity.get_identity()

        record = identity.identity()
        assert record.uid == uid
        assert record.fingerprint == store.get(FINGERPRINT)
        assert record.fingerprint_source_count == 2
        assert record.previous_uid is None

    def test_result_is_cached(self, identity, reader):
        identity.get_identity()
        identity.get_identity()

        assert reader.calls == 1

    def test_stored_record_is_reused_without_collection(self, identity, store):
        uid = identity.get_identity()
        reader = StubReader({"system_uuid": "OTHER"})

        restarted = IdentityManager(store, FingerprintCollector(store, reader), salt="test-salt")

        assert restarted.get_identity() == uid
        assert reader.calls == 0

    def test_legacy_uid_is_upgraded(self, store, reader):
        store.set(UID, "legacy-uid-0001")
        manager = IdentityManager(store, FingerprintCollector(store, reader), salt="test-salt")

        uid = manager.get_identity()

        assert uid != "legacy-uid-0001"
        assert manager.previous_uid == "legacy-uid-0001"
        assert store.get(FINGERPRINT)

    def test_forced_recompute_always_sets_previous(self, identity):
        uid = identity.get_identity()

        recomputed = identity.get_identity(force_recompute=True)

        assert recomputed == uid
        assert identity.previous_uid == uid

    def test_rederive_unchanged_keeps_previous_clear(self, identity):
        identity.get_identity()

        uid, changed = identity.rederive()

        assert not changed
        assert identity.previous_uid is None
        assert identity.uid == uid

    def test_rederive_after_hardware_change(self, identity, reader):
        old_uid = identity.get_identity()
        reader.values["system_uuid"] = "NEW-BOARD-UUID"

        new_uid, changed = identity.rederive()

        assert changed
        assert new_uid != old_uid
        assert identity.previous_uid == old_uid
        assert identity.migration_intent() == MigrationIntent(from_uid=old_uid, to_uid=new_uid)

    def test_acknowledge_migration_clears_previous(self, identity, reader, audit):
        identity.get_identity()
        reader.values["system_uuid"] = "NEW-BOARD-UUID"
        identity.rederive()

        identity.acknowledge_migration()

        assert identity.previous_uid is None
        assert identity.migration_intent() is None
        assert audit.get_events(AuditEventType.MIGRATION_ACKNOWLEDGED)

    def test_record_is_written_together(self, identity, store):
        identity.get_identity()

        data = store.snapshot()
        assert {UID, FINGERPRINT, FINGERPRINT_SOURCE_COUNT} <= set(data)


class TestFallbackIdentity:

    def test_collection_failure_yields_fallback(self, store):
        collector = MagicMock()
        collector.collect.side_effect = RuntimeError("wmi unavailable")
        manager = IdentityManager(store, collector, salt="test-salt")

        uid = manager.get_identity()

        assert is_fallback_uid(uid)
        assert re.fullmatch(r"fallback-\d+-[0-9a-f]+", uid)
        assert store.get(UID) == uid

    def test_fallback_keeps_previous_and_drops_fingerprint(self, identity, store):
        real_uid = identity.get_identity()
        collector = MagicMock()
        collector.collect.side_effect = RuntimeError("wmi unavailable")
        broken = IdentityManager(store, collector, salt="test-salt")

        fallback = broken.get_identity(force_recompute=True)

        assert is_fallback_uid(fallback)
        assert store.get(PREVIOUS_UID) == real_uid
        assert not store.has(FINGERPRINT)

    def test_next_start_rederives_after_fallback(self, identity, store, reader):
        real_uid = identity.get_identity()
        collector = MagicMock()
        collector.collect.side_effect = RuntimeError("wmi unavailable")
        IdentityManager(store, collector, salt="test-salt").get_identity(force_recompute=True)

        restarted = IdentityManager(store, FingerprintCollector(store, reader), salt="test-salt")

        assert restarted.get_identity() == real_uid
        # Back on the first derived UID, so no migration is pending
        assert restarted.previous_uid is None

    def test_fallback_is_audited(self, store, audit):
        collector = MagicMock()
        collector.collect.side_effect = RuntimeError("wmi unavailable")

        IdentityManager(store, collector, salt="test-salt", audit=audit).get_identity()

        assert audit.get_events(AuditEventType.UID_FALLBACK)


def test_concurrent_recomputes_share_one_collection(store):
    started = threading.Event()
    release = threading.Event()

    def slow_collect():
        started.set()
        release.wait(5)
        return _fingerprint("BFEBFBFF000906EA")

    collector = MagicMock()
    collector.collect.side_effect = slow_collect
    flight = SingleFlight()
    manager = IdentityManager(store, collector, salt="test-salt", flight=flight)

    results = []
    threads = [
        threading.Thread(target=lambda: results.append(manager.get_identity(force_recompute=True)))
        for _ in range(4)
    ]
    threads[0].start()
    assert started.wait(5)
    for thread in threads[1:]:
        thread.start()

    deadline = time.monotonic() + 5
    while flight._calls[RECOMPUTE_KEY].waiters < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    release.set()
    for thread in threads:
        thread.join(5)

    assert collector.collect.call_count == 1
    assert len(set(results)) == 1
    assert len(results) == 4

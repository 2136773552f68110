"""
Tests for runtime wiring and the startup sequence.
"""

import logging
import threading
from unittest.mock import MagicMock

import pytest

from conftest import StubReader
from deviceauth.core.auth.transport import BackendTransport
from deviceauth.core.config import (
    DeviceAuthConfig,
    PathConfig,
    RemoteConfig,
    SchedulerConfig,
    ServerConfig,
)
from deviceauth.core.events import INIT_COMPLETE
from deviceauth.db.kv_store import AUTH_TOKEN, UID, KeyValueStore
from deviceauth.runtime import DeviceAuthRuntime
from deviceauth.security.audit import AuditEventType


@pytest.fixture
def config(tmp_path):
    return DeviceAuthConfig(
        paths=PathConfig(data_dir=tmp_path / "data", config_dir=tmp_path / "config", log_dir=tmp_path / "logs"),
        remote=RemoteConfig(uid_salt="runtime-salt"),
        server=ServerConfig(enabled=False),
        scheduler=SchedulerConfig(verify_interval_seconds=3600, migrate_delay_seconds=0.01),
    )


@pytest.fixture
def transport():
    mock = MagicMock(spec=BackendTransport)
    mock.base_url = "http://localhost:5000/api"
    return mock


def _runtime(config, transport):
    return DeviceAuthRuntime(config, transport=transport, reader=StubReader({"system_uuid": "ABC123"}))


def test_startup_sequence(config, transport):
    migrated = threading.Event()
    transport.request.side_effect = lambda *args, **kwargs: migrated.set() or {"success": True, "migrated": False}

    with _runtime(config, transport) as runtime:
        uid = runtime.identity.uid
        assert uid
        assert migrated.wait(2)
        assert transport.request.call_args.args[1] == "/desktop/smart-migrate"
        assert not runtime.scheduler.is_running
        init = runtime.events.since(0, topic=INIT_COMPLETE)
        assert init[0].payload == {"uid": uid}

    assert not runtime.is_started
    assert runtime.audit.get_events(AuditEventType.STARTUP)
    assert runtime.audit.get_events(AuditEventType.SHUTDOWN)


def test_legacy_uid_logs_pending_migration(config, transport, caplog):
    KeyValueStore(config.paths.state_db).set(UID, "legacy-uid")
    transport.request.return_value = {"success": True, "migrated": False}

    with caplog.at_level(logging.INFO, logger="deviceauth.runtime"):
        with _runtime(config, transport) as runtime:
            uid = runtime.identity.uid

    assert uid != "legacy-uid"
    assert runtime.identity.previous_uid == "legacy-uid"
    assert f"UID migration pending from legacy-uid to {uid}" in caplog.text


def test_persisted_session_starts_verification(config, transport):
    KeyValueStore(config.paths.state_db).set(AUTH_TOKEN, "tok-123")
    transport.request.return_value = {"success": True, "migrated": False}

    runtime = _runtime(config, transport)
    runtime.start()
    try:
        assert runtime.client.is_authenticated
        assert runtime.scheduler.is_running
    finally:
        runtime.stop()

    assert not runtime.scheduler.is_running


def test_authenticate_starts_scheduler(config, transport):
    transport.is_healthy.return_value = True
    runtime = _runtime(config, transport)
    uid = runtime.identity.get_identity()
    transport.request.return_value = {
        "success": True,
        "data": {"token": "tok-123", "user": {"id": 1}, "device": {"uid": uid}},
    }

    try:
        session = runtime.authenticate()
        assert session.token == "tok-123"
        assert runtime.scheduler.is_running
    finally:
        runtime.scheduler.stop()


def test_persisted_api_base_url_is_used(config):
    KeyValueStore(config.paths.state_db).set("api_base_url", "https://persisted.example.com/api")

    runtime = DeviceAuthRuntime(config, reader=StubReader({"system_uuid": "ABC123"}))

    assert runtime.transport.base_url == "https://persisted.example.com/api"


def test_stop_without_start_is_noop(config, transport):
    runtime = _runtime(config, transport)
    runtime.stop()
    transport.close.assert_not_called()

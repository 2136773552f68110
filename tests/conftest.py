"""
Pytest configuration and shared fixtures.
"""

import json
from typing import Dict, Optional

import pytest
import requests

from deviceauth.core.device.hardware_fingerprint import FingerprintCollector, HardwareReader
from deviceauth.core.device.identity import IdentityManager
from deviceauth.core.events import EventBus
from deviceauth.db.kv_store import KeyValueStore
from deviceauth.security.audit import TamperAwareAuditLog


class StubReader(HardwareReader):
    """Hardware reader answering from a dict; missing attributes are unavailable."""

    def __init__(self, values: Optional[Dict[str, str]] = None, failing: tuple = ()) -> None:
        self.values = dict(values or {})
        self.failing = set(failing)
        self.calls = 0

    def _value(self, name: str) -> Optional[str]:
        if name in self.failing:
            raise OSError(f"{name} not readable")
        return self.values.get(name)

    def system_uuid(self):
        self.calls += 1
        return self._value("system_uuid")

    def system_serial(self):
        return self._value("system_serial")

    def baseboard_manufacturer(self):
        return self._value("baseboard_manufacturer")

    def baseboard_model(self):
        return self._value("baseboard_model")

    def baseboard_serial(self):
        return self._value("baseboard_serial")

    def bios_serial(self):
        return self._value("bios_serial")

    def cpu_serial(self):
        return self._value("cpu_serial")

    def disk_serial(self):
        return self._value("disk_serial")

    def os_serial(self):
        return self._value("os_serial")


def make_response(status: int = 200, body=None, url: str = "http://backend.test/api") -> requests.Response:
    """Build a real requests.Response without touching the network."""
    response = requests.Response()
    response.status_code = status
    response.url = url
    response._content = json.dumps(body).encode("utf-8") if body is not None else b""
    response.headers["Content-Type"] = "application/json"
    return response


@pytest.fixture
def store(tmp_path):
    return KeyValueStore(tmp_path / "state.db")


@pytest.fixture
def audit(tmp_path):
    return TamperAwareAuditLog(tmp_path / "audit.log")


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def reader():
    return StubReader({
        "system_uuid": "4C4C4544-0042-3510-8052-B4C04F384E32",
        "disk_serial": "S4EWNX0N123456",
    })


@pytest.fixture
def identity(store, reader, audit):
    return IdentityManager(store, FingerprintCollector(store, reader), salt="test-salt", audit=audit)

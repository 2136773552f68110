"""
Tests for the loopback control-plane API.
"""

from unittest.mock import MagicMock

import pytest

from deviceauth.core.auth.auth_client import AuthClient, AuthSession
from deviceauth.core.auth.transport import BackendTransport
from deviceauth.core.errors import AuthError, ErrorKind
from deviceauth.db.kv_store import API_BASE_URL
from deviceauth.web.control_server import ControlServer, create_control_app


@pytest.fixture
def transport():
    mock = MagicMock(spec=BackendTransport)
    mock.base_url = "http://localhost:5000/api"
    return mock


@pytest.fixture
def auth_client(store, identity, transport, events):
    return AuthClient(store, identity, transport, events=events, sleep=lambda _: None)


@pytest.fixture
def authenticate():
    return MagicMock()


@pytest.fixture
def app(identity, auth_client, events, authenticate):
    app = create_control_app(identity, auth_client, events, authenticate=authenticate, version="9.9.9")
    app.config["TESTING"] = True
    return app


@pytest.fixture
def http(app):
    return app.test_client()


def assert_cors(response):
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert response.headers["Access-Control-Allow-Private-Network"] == "true"


class TestPreflight:

    @pytest.mark.parametrize("path", ["/api/status", "/api/config", "/api/anything/else", "/"])
    def test_options_any_path(self, http, path):
        response = http.options(path)

        assert response.status_code == 200
        assert response.data == b""
        assert_cors(response)


class TestReadEndpoints:

    def test_status(self, http, identity):
        response = http.get("/api/status")

        assert response.status_code == 200
        body = response.get_json()
        assert body["success"] is True
        assert body["data"]["status"] == "running"
        assert body["data"]["version"] == "9.9.9"
        assert body["data"]["uid"] == identity.get_identity()
        assert body["data"]["isAuthenticated"] is False
        assert body["data"]["apiBaseUrl"] == "http://localhost:5000/api"
        assert_cors(response)

    def test_uid(self, http, identity):
        data = http.get("/api/uid").get_json()["data"]

        assert data["uid"] == identity.get_identity()
        assert set(data["deviceInfo"]) == {"platform", "os", "version"}

    def test_get_config(self, http):
        assert http.get("/api/config").get_json() == {
            "success": True,
            "data": {"apiBaseUrl": "http://localhost:5000/api"},
        }

    def test_events_since(self, http, events):
        first = events.publish("notice", {"title": "one"})
        events.publish("updater", {"type": "checking"})

        data = http.get(f"/api/events?since={first.id}").get_json()["data"]

        assert [event["topic"] for event in data["events"]] == ["updater"]
        assert data["lastId"] == first.id + 1

    def test_events_invalid_since(self, http):
        response = http.get("/api/events?since=abc")
        assert response.status_code == 400
        assert response.get_json()["success"] is False


class TestConfigUpdate:

    def test_trailing_slash_is_stripped_and_persisted(self, http, store, transport):
        response = http.post("/api/config", json={"apiBaseUrl": "https://auth.example.com/api/"})

        assert response.status_code == 200
        assert response.get_json()["data"] == {"apiBaseUrl": "https://auth.example.com/api"}
        assert store.get(API_BASE_URL) == "https://auth.example.com/api"
        assert transport.base_url == "https://auth.example.com/api"

    def test_malformed_json(self, http, store):
        response = http.post("/api/config", data="{not json", content_type="application/json")

        assert response.status_code == 400
        assert response.get_json()["success"] is False
        assert_cors(response)
        assert not store.has(API_BASE_URL)

    def test_non_object_json(self, http):
        response = http.post("/api/config", json=["https://auth.example.com"])
        assert response.status_code == 400

    def test_invalid_url(self, http, store):
        response = http.post("/api/config", json={"apiBaseUrl": "javascript:alert(1)"})

        assert response.status_code == 400
        assert not store.has(API_BASE_URL)

    def test_missing_url_is_ignored(self, http, store):
        response = http.post("/api/config", json={})

        assert response.status_code == 200
        assert not store.has(API_BASE_URL)

    def test_empty_body_returns_current_url(self, http, store):
        response = http.post("/api/config")

        assert response.status_code == 200
        assert response.get_json() == {"success": True, "data": {"apiBaseUrl": "http://localhost:5000/api"}}
        assert not store.has(API_BASE_URL)


class TestAuthenticateEndpoint:

    def test_success(self, http, authenticate):
        authenticate.return_value = AuthSession(uid="abc", token="tok-123", user={"id": 7}, device={"uid": "abc"})

        response = http.post("/api/authenticate")

        assert response.status_code == 200
        data = response.get_json()["data"]
        assert data == {"uid": "abc", "user": {"id": 7}, "device": {"uid": "abc"}}
        assert "tok-123" not in response.get_data(as_text=True)
        authenticate.assert_called_once_with()

    def test_base_url_applied_first(self, http, authenticate, store):
        authenticate.return_value = AuthSession(uid="abc", token="t", user={}, device={})

        http.post("/api/authenticate", json={"apiBaseUrl": "https://auth.example.com/api/"})

        assert store.get(API_BASE_URL) == "https://auth.example.com/api"

    @pytest.mark.parametrize("kind,status", [
        (ErrorKind.NETWORK, 503),
        (ErrorKind.BACKEND_UNAVAILABLE, 502),
        (ErrorKind.UNAUTHORIZED, 403),
        (ErrorKind.UNKNOWN, 500),
    ])
    def test_error_status_mapping(self, http, authenticate, kind, status):
        authenticate.side_effect = AuthError(kind, "failed")

        response = http.post("/api/authenticate")

        assert response.status_code == status
        assert response.get_json() == {"success": False, "message": "failed"}
        assert_cors(response)


class TestNotFound:

    def test_unknown_path(self, http):
        response = http.get("/api/nope")

        assert response.status_code == 404
        assert response.get_json() == {"success": False, "message": "not found"}
        assert_cors(response)

    def test_wrong_method(self, http):
        response = http.delete("/api/status")

        assert response.status_code == 404
        assert response.get_json()["message"] == "not found"


def test_server_start_stop(app):
    server = ControlServer(app, "127.0.0.1", 0)

    server.start()
    try:
        assert server.is_running
        assert server.port > 0
    finally:
        server.stop()

    assert not server.is_running

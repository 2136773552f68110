"""
Control-Plane Server
====================

Loopback HTTP API through which the local UI (or a web page granted
Private Network Access) reads the UID, triggers authentication and
changes the API base URL.

Every response carries CORS and Private Network Access headers, error
responses included. Bodies use the ``{success, data|message}`` envelope.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from flask import Flask, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException, MethodNotAllowed, NotFound
from werkzeug.serving import BaseWSGIServer, make_server

from deviceauth.core.auth.auth_client import AuthClient, AuthSession
from deviceauth.core.config import APP_VERSION
from deviceauth.core.device.hardware_fingerprint import get_device_descriptor
from deviceauth.core.device.identity import IdentityManager
from deviceauth.core.errors import AuthError, ConfigValidationError
from deviceauth.core.events import EventBus

logger = logging.getLogger(__name__)


def _ok(data: Any = None, status: int = 200):
    return jsonify({"success": True, "data": data}), status


def _fail(message: str, status: int):
    return jsonify({"success": False, "message": message}), status


def _json_body() -> Dict[str, Any]:
    """Decode the request body as a JSON object. An empty body reads as {}."""
    if not request.get_data(cache=True):
        return {}
    try:
        body = request.get_json(force=True)
    except BadRequest as e:
        raise ConfigValidationError("Malformed JSON body") from e
    if not isinstance(body, dict):
        raise ConfigValidationError("Request body must be a JSON object")
    return body


def create_control_app(
    identity: IdentityManager,
    client: AuthClient,
    events: EventBus,
    authenticate: Optional[Callable[[], AuthSession]] = None,
    version: str = APP_VERSION,
) -> Flask:
    """
    Build the control-plane Flask application.

    Args:
        identity: UID owner
        client: Authentication client
        events: Event stream exposed on /api/events
        authenticate: Callable used by POST /api/authenticate
            (defaults to client.authenticate)
        version: Version reported by /api/status

    Returns:
        Flask application
    """
    app = Flask(__name__)
    do_authenticate = authenticate or client.authenticate

    @app.before_request
    def handle_preflight():
        if request.method == "OPTIONS":
            return app.make_response("")
        return None

    @app.after_request
    def add_cors_headers(response):
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        response.headers["Access-Control-Allow-Private-Network"] = "true"
        response.headers["Access-Control-Max-Age"] = "3600"
        return response

    @app.errorhandler(NotFound)
    @app.errorhandler(MethodNotAllowed)
    def not_found(error: HTTPException):
        return _fail("not found", 404)

    @app.errorhandler(ConfigValidationError)
    def invalid_request(error: ConfigValidationError):
        return _fail(str(error), 400)

    @app.errorhandler(HTTPException)
    def http_error(error: HTTPException):
        return _fail(error.description or error.name, error.code or 500)

    @app.errorhandler(Exception)
    def internal_error(error: Exception):
        logger.exception("Control request %s %s failed", request.method, request.path)
        return _fail("internal error", 500)

    @app.route("/api/status", methods=["GET"])
    def status():
        return _ok({
            "status": "running",
            "version": version,
            "uid": identity.get_identity(),
            "isAuthenticated": client.is_authenticated,
            "apiBaseUrl": client.api_base_url,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    @app.route("/api/uid", methods=["GET"])
    def uid():
        return _ok({"uid": identity.get_identity(), "deviceInfo": get_device_descriptor()})

    @app.route("/api/config", methods=["GET"])
    def get_config():
        return _ok({"apiBaseUrl": client.api_base_url})

    @app.route("/api/config", methods=["POST"])
    def set_config():
        body = _json_body()
        url = body.get("apiBaseUrl")
        if url:
            client.set_api_base_url(url)
        return _ok({"apiBaseUrl": client.api_base_url})

    @app.route("/api/authenticate", methods=["POST"])
    def authenticate():
        body = _json_body()
        if body.get("apiBaseUrl"):
            client.set_api_base_url(body["apiBaseUrl"])

        try:
            session = do_authenticate()
        except AuthError as e:
            logger.warning("Authentication via control plane failed: %s", e.message)
            return _fail(e.message, e.http_status)

        return _ok({"uid": session.uid, "user": session.user, "device": session.device})

    @app.route("/api/events", methods=["GET"])
    def list_events():
        since = request.args.get("since", "0")
        try:
            since_id = int(since)
        except ValueError:
            raise ConfigValidationError("since must be an integer")
        return _ok({
            "events": [event.to_dict() for event in events.since(since_id)],
            "lastId": events.last_id,
        })

    return app


class ControlServer:
    """
    Serves the control-plane app on a loopback port in a daemon thread.

    Usage:
        server = ControlServer(app, "127.0.0.1", 3001)
        server.start()
        ...
        server.stop()
    """

    def __init__(self, app: Flask, host: str = "127.0.0.1", port: int = 3001) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._server: Optional[BaseWSGIServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        """Bound port (resolved after start when configured as 0)."""
        if self._server is not None:
            return self._server.server_port
        return self._port

    def start(self) -> None:
        """
        Bind and serve in the background.

        Raises:
            OSError: If the port cannot be bound
        """
        if self._server is not None:
            return
        self._server = make_server(self._host, self._port, self._app, threaded=True)
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="deviceauth-control", daemon=True
        )
        self._thread.start()
        logger.info("Control server listening on http://%s:%d", self._host, self.port)

    def stop(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Control server stopped")

"""
Backend Transport
=================

JSON-over-HTTP client for the remote authority.

Features:
- Pooled ``requests.Session`` with a standard User-Agent
- No adapter-level retries: retry policy belongs to the caller
- Every failure surfaces as a ``TransportError`` carrying an ``ErrorKind``
  derived from the exception type or HTTP status
"""

from __future__ import annotations

import errno
import http.client
import logging
import socket
from typing import Any, Dict, Final, Iterator, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.exceptions import NameResolutionError, NewConnectionError, ProtocolError

from deviceauth.core.errors import ErrorKind, NetworkCause, TransportError

DEFAULT_TIMEOUT: Final[float] = 15
HEALTH_TIMEOUT: Final[float] = 10
PROBE_TIMEOUT: Final[float] = 5

DEFAULT_POOL_CONNECTIONS: Final[int] = 4
DEFAULT_POOL_MAXSIZE: Final[int] = 8

_STATUS_KINDS: Final[Dict[int, ErrorKind]] = {
    401: ErrorKind.SESSION_EXPIRED,
    403: ErrorKind.UNAUTHORIZED,
}

logger = logging.getLogger(__name__)


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield exc and every exception wrapped inside it."""
    seen: set[int] = set()
    pending = [exc]
    while pending:
        current = pending.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        pending.append(current.__cause__)
        pending.append(current.__context__)
        pending.append(getattr(current, "reason", None))
        pending.extend(arg for arg in current.args if isinstance(arg, BaseException))


def classify_connection_error(exc: BaseException) -> NetworkCause:
    """Map a connection failure to its NetworkCause by exception type."""
    for item in _exception_chain(exc):
        if isinstance(item, (NameResolutionError, socket.gaierror)):
            return NetworkCause.DNS
        if isinstance(item, ConnectionRefusedError):
            return NetworkCause.REFUSED
        if isinstance(item, ConnectionResetError):
            return NetworkCause.RESET
        if isinstance(item, (http.client.RemoteDisconnected, ProtocolError)):
            return NetworkCause.HANG_UP
        if isinstance(item, socket.timeout):
            return NetworkCause.TIMEOUT
        if isinstance(item, OSError) and item.errno == errno.ECONNREFUSED:
            return NetworkCause.REFUSED
    for item in _exception_chain(exc):
        if isinstance(item, NewConnectionError):
            return NetworkCause.REFUSED
    return NetworkCause.HANG_UP


class BackendTransport:
    """
    HTTP client bound to the API base URL.

    Usage:
        transport = BackendTransport("https://auth.example.com/api", "DeviceAuth-Desktop/1.0.0")
        body = transport.request("POST", "/desktop/verify-device", json={"uid": uid}, token=token)
    """

    def __init__(
        self,
        base_url: str,
        user_agent: str,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session or self._build_session()
        self._session.headers.update({
            "User-Agent": user_agent,
            "Accept": "application/json",
        })

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        adapter = HTTPAdapter(
            max_retries=0,
            pool_connections=DEFAULT_POOL_CONNECTIONS,
            pool_maxsize=DEFAULT_POOL_MAXSIZE,
        )
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    @property
    def base_url(self) -> str:
        return self._base_url

    @base_url.setter
    def base_url(self, value: str) -> None:
        self._base_url = value.rstrip("/")
        logger.info("API base URL set to %s", self._base_url)

    def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> Dict[str, Any]:
        """
        Perform a request and decode the JSON body.

        Args:
            method: HTTP method
            path: Path relative to the base URL
            json: Optional JSON body
            token: Optional bearer token
            timeout: Seconds before the request is abandoned

        Returns:
            Decoded JSON object (empty dict for an empty body)

        Raises:
            TransportError: On any network, HTTP or decoding failure
        """
        url = f"{self._base_url}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {token}"} if token else None

        try:
            response = self._session.request(method, url, json=json, headers=headers, timeout=timeout)
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise self._http_error(e.response) from e
        except requests.exceptions.Timeout as e:
            raise TransportError(
                ErrorKind.NETWORK, f"Request to {path} timed out", cause=NetworkCause.TIMEOUT
            ) from e
        except requests.exceptions.ConnectionError as e:
            cause = classify_connection_error(e)
            raise TransportError(
                ErrorKind.NETWORK, f"Cannot reach backend ({cause.value.lower()})", cause=cause
            ) from e
        except requests.exceptions.RequestException as e:
            raise TransportError(ErrorKind.UNKNOWN, f"Request to {path} failed: {e}") from e

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(
                ErrorKind.UNKNOWN, "Backend returned a non-JSON response", status=response.status_code
            ) from e
        if not isinstance(body, dict):
            raise TransportError(
                ErrorKind.UNKNOWN, "Backend returned an unexpected response", status=response.status_code
            )
        return body

    @staticmethod
    def _http_error(response: requests.Response) -> TransportError:
        status = response.status_code
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = None
        kind = _STATUS_KINDS.get(status, ErrorKind.UNKNOWN)
        logger.warning("Backend answered HTTP %d for %s", status, response.url)
        return TransportError(kind, f"Backend answered HTTP {status}", status=status, payload=payload)

    def is_healthy(self, timeout: float = HEALTH_TIMEOUT) -> bool:
        """Return True when ``GET /health`` answers 200."""
        try:
            response = self._session.get(f"{self._base_url}/health", timeout=timeout)
        except requests.exceptions.RequestException as e:
            logger.warning("Backend health check failed: %s", e)
            return False
        if response.status_code != 200:
            logger.warning("Backend health check answered HTTP %d", response.status_code)
            return False
        return True

    def probe(self, url: str, timeout: float = PROBE_TIMEOUT) -> bool:
        """Return True when url answers at all (any status)."""
        try:
            self._session.head(url, timeout=timeout, allow_redirects=True)
        except requests.exceptions.RequestException as e:
            logger.info("Connectivity probe to %s failed: %s", url, e)
            return False
        return True

    def close(self) -> None:
        self._session.close()

    def __repr__(self) -> str:
        return f"BackendTransport(base_url={self._base_url!r})"

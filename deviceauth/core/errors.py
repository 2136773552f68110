"""
Error Taxonomy
==============

Closed set of failure kinds produced by the transport layer and switched on
by the authentication client and the control server.

Kinds:
- NETWORK: connection reset, timeout, DNS failure, refused, hang-up (retried)
- BACKEND_UNAVAILABLE: health probe failed (not retried)
- UNAUTHORIZED: HTTP 403 (terminal)
- SESSION_EXPIRED: HTTP 401 on verify (one re-authentication)
- VALIDATION: malformed local payload (400, local only)
- UNKNOWN: anything else
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Final, Optional


class ErrorKind(str, Enum):
    """Classified failure kind."""
    NETWORK = "NETWORK"
    BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"
    UNAUTHORIZED = "UNAUTHORIZED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    VALIDATION = "VALIDATION"
    UNKNOWN = "UNKNOWN"


class NetworkCause(str, Enum):
    """Transport-level cause of a NETWORK failure."""
    RESET = "RESET"
    TIMEOUT = "TIMEOUT"
    DNS = "DNS"
    REFUSED = "REFUSED"
    HANG_UP = "HANG_UP"


# HTTP-equivalent status reported to control-plane callers
_STATUS_BY_KIND: Final[dict[ErrorKind, int]] = {
    ErrorKind.NETWORK: 503,
    ErrorKind.BACKEND_UNAVAILABLE: 502,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.SESSION_EXPIRED: 401,
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNKNOWN: 500,
}


def status_for_kind(kind: ErrorKind) -> int:
    return _STATUS_BY_KIND[kind]


class DeviceAuthError(Exception):
    """Base exception for device identity and authentication errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    @property
    def http_status(self) -> int:
        return status_for_kind(self.kind)


class TransportError(DeviceAuthError):
    """
    A request to the remote authority failed.

    Attributes:
        kind: Classified failure kind
        status: HTTP status when the server answered, else None
        payload: Decoded JSON error body when available
        cause: NetworkCause for NETWORK failures
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status: Optional[int] = None,
        payload: Optional[dict[str, Any]] = None,
        cause: Optional[NetworkCause] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status
        self.payload = payload or {}
        self.cause = cause

    @property
    def is_transient(self) -> bool:
        return self.kind is ErrorKind.NETWORK

    @property
    def server_message(self) -> Optional[str]:
        message = self.payload.get("message")
        return message if isinstance(message, str) and message else None

    def __repr__(self) -> str:
        return (
            f"TransportError(kind={self.kind.value}, status={self.status}, "
            f"cause={self.cause.value if self.cause else None})"
        )


class AuthError(DeviceAuthError):
    """Authentication failed; message is suitable for display."""

    def __init__(self, kind: ErrorKind, message: str, http_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self._http_status = http_status

    @property
    def http_status(self) -> int:
        if self._http_status is not None:
            return self._http_status
        return status_for_kind(self.kind)


class ConfigValidationError(DeviceAuthError, ValueError):
    """Raised when a local configuration payload is malformed."""

    kind = ErrorKind.VALIDATION

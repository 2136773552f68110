"""
Device Authentication Client
============================

Authenticates the device UID against the remote authority, keeps the
session, verifies it periodically and reconciles UID drift.

Features:
- Bounded retry loops driven by ``RetryPolicy`` values
- Failure handling switches on ``ErrorKind``, never on message text
- Concurrent authenticate calls share one execution
- Session state survives restarts through the key-value store

Security:
- Tokens are held in memory and in the local store only, never logged
- A 403 is terminal: the device must be authorized by an administrator
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Final, Optional

from deviceauth.core.auth.transport import BackendTransport, HEALTH_TIMEOUT, PROBE_TIMEOUT
from deviceauth.core.config import DEFAULT_API_BASE_URL, DEFAULT_CONNECTIVITY_PROBE_URL
from deviceauth.core.device.hardware_fingerprint import get_device_descriptor
from deviceauth.core.device.identity import IdentityManager
from deviceauth.core.errors import AuthError, ErrorKind, TransportError
from deviceauth.core.events import MIGRATION_SUCCESS, EventBus, Notice
from deviceauth.db.kv_store import (
    KeyValueStore,
    StoreError,
    API_BASE_URL,
    AUTH_TOKEN,
    DEVICE_INFO,
    USER_INFO,
)
from deviceauth.security.audit import AuditEventType, AuditSeverity, TamperAwareAuditLog
from deviceauth.utils.concurrency import SingleFlight
from deviceauth.utils.validators import normalize_api_base_url

AUTHENTICATE_KEY: Final[str] = "authenticate"

AUTH_TIMEOUT: Final[float] = 30
VERIFY_TIMEOUT: Final[float] = 15
MIGRATE_TIMEOUT: Final[float] = 15

UNAUTHORIZED_MESSAGE: Final[str] = "Unauthorized. Contact the administrator to authorize this device"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Number of retries after the first attempt, and the pause between them."""
    max_retries: int
    delay_seconds: float

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds cannot be negative")


AUTHENTICATE_POLICY: Final[RetryPolicy] = RetryPolicy(max_retries=3, delay_seconds=2.0)
VERIFY_POLICY: Final[RetryPolicy] = RetryPolicy(max_retries=2, delay_seconds=1.0)


@dataclass(frozen=True, slots=True)
class AuthSession:
    """Result of a successful authentication."""
    uid: str
    token: str
    user: Dict[str, Any]
    device: Dict[str, Any]

    def __repr__(self) -> str:
        return f"AuthSession(uid={self.uid!r}, user={self.user.get('id')!r})"


@dataclass(frozen=True, slots=True)
class MigrationResult:
    """Server answer to a smart-migrate request."""
    migrated: bool
    message: str = ""
    points: Optional[int] = None


def resolve_api_base_url(override: Optional[str], store: KeyValueStore) -> str:
    """
    Effective API base URL: explicit override, then the persisted value,
    then DEFAULT_API_BASE_URL.
    """
    if override:
        return override.rstrip("/")
    try:
        persisted = store.get(API_BASE_URL)
    except StoreError as e:
        logging.getLogger(__name__).warning("Persisted API base URL unreadable: %s", e)
        persisted = None
    return persisted or DEFAULT_API_BASE_URL


class AuthClient:
    """
    Session owner for the device.

    Usage:
        client = AuthClient(store, identity, transport, events=bus)
        session = client.authenticate()      # raises AuthError
        status = client.verify()             # None on failure
    """

    def __init__(
        self,
        store: KeyValueStore,
        identity: IdentityManager,
        transport: BackendTransport,
        events: Optional[EventBus] = None,
        audit: Optional[TamperAwareAuditLog] = None,
        admin_contact: str = "",
        connectivity_probe_url: str = DEFAULT_CONNECTIVITY_PROBE_URL,
        flight: Optional[SingleFlight] = None,
        auth_policy: RetryPolicy = AUTHENTICATE_POLICY,
        verify_policy: RetryPolicy = VERIFY_POLICY,
        sleep: Callable[[float], None] = time.sleep,
        device_info: Callable[[], Dict[str, str]] = get_device_descriptor,
    ) -> None:
        """
        Initialize the client.

        Args:
            store: Persistent store for session state
            identity: UID owner
            transport: HTTP client bound to the API base URL
            events: Event bus for user-facing notices
            audit: Optional audit trail
            admin_contact: Appended to the unauthorized message when set
            connectivity_probe_url: URL used to test general internet access
            flight: Single-flight guard for concurrent authenticate calls
            auth_policy: Retry policy for authenticate
            verify_policy: Retry policy for verify
            sleep: Pause function used between retries
            device_info: Provider of the device descriptor sent on authenticate
        """
        self._store = store
        self._identity = identity
        self._transport = transport
        self._events = events or EventBus()
        self._audit = audit
        self._admin_contact = admin_contact
        self._probe_url = connectivity_probe_url
        self._flight = flight or SingleFlight()
        self._auth_policy = auth_policy
        self._verify_policy = verify_policy
        self._sleep = sleep
        self._device_info = device_info
        self._token: Optional[str] = None
        self._log = logging.getLogger("deviceauth.auth")

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def is_authenticated(self) -> bool:
        return self._token is not None

    @property
    def api_base_url(self) -> str:
        return self._transport.base_url

    def restore_session(self) -> bool:
        """Load a persisted token. Returns True when one was found."""
        try:
            token = self._store.get(AUTH_TOKEN)
        except StoreError as e:
            self._log.warning("Persisted session unreadable: %s", e)
            return False
        if not token:
            return False
        self._token = token
        self._log.info("Restored persisted session")
        return True

    def clear_session(self) -> None:
        """Forget the token, user and device records."""
        self._token = None
        self._store.delete(AUTH_TOKEN, USER_INFO, DEVICE_INFO)
        self._record(AuditEventType.SESSION_CLEARED, "Local session cleared")

    def stored_data(self) -> Dict[str, Any]:
        """Snapshot of persisted identity and session state, safe for display."""
        data = self._store.snapshot([USER_INFO, DEVICE_INFO])
        return {
            "uid": self._identity.get_identity(),
            "previousUid": self._identity.previous_uid,
            "hasToken": self.is_authenticated,
            "userInfo": data.get(USER_INFO),
            "deviceInfo": data.get(DEVICE_INFO),
            "apiBaseUrl": self.api_base_url,
        }

    def set_api_base_url(self, url: str) -> str:
        """
        Persist and apply a new API base URL.

        Returns:
            The normalized URL

        Raises:
            ConfigValidationError: If url is not an http(s) URL
        """
        normalized = normalize_api_base_url(url)
        self._store.set(API_BASE_URL, normalized)
        self._transport.base_url = normalized
        self._record(AuditEventType.CONFIG_CHANGED, "API base URL changed", details={"apiBaseUrl": normalized})
        return normalized

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self) -> AuthSession:
        """
        Authenticate this device.

        Concurrent callers share one execution and its outcome.

        Returns:
            The new session

        Raises:
            AuthError: With kind NETWORK, BACKEND_UNAVAILABLE, UNAUTHORIZED or UNKNOWN
        """
        return self._flight.do(AUTHENTICATE_KEY, self._authenticate)

    def _authenticate(self) -> AuthSession:
        uid = self._identity.get_identity()

        if not self._transport.is_healthy(timeout=HEALTH_TIMEOUT):
            self._record_failure(ErrorKind.BACKEND_UNAVAILABLE, uid)
            raise AuthError(
                ErrorKind.BACKEND_UNAVAILABLE,
                "Backend service unavailable, check the server address",
            )

        payload: Dict[str, Any] = {"uid": uid, "deviceInfo": self._device_info()}
        previous_uid = self._identity.previous_uid
        if previous_uid and previous_uid != uid:
            payload["prevUid"] = previous_uid

        try:
            body = self._with_retries(
                "authenticate",
                self._auth_policy,
                lambda: self._transport.request(
                    "POST", "/desktop/authenticate", json=payload, timeout=AUTH_TIMEOUT
                ),
            )
        except TransportError as e:
            error = self._auth_error(e)
            self._record_failure(error.kind, uid)
            raise error from e

        if not body.get("success"):
            self._record_failure(ErrorKind.UNKNOWN, uid)
            raise AuthError(ErrorKind.UNKNOWN, body.get("message") or "Authentication failed")

        data = body.get("data") or {}
        token = data.get("token")
        if not token:
            self._record_failure(ErrorKind.UNKNOWN, uid)
            raise AuthError(ErrorKind.UNKNOWN, "Authentication response did not include a token")

        user = data.get("user") or {}
        device = data.get("device") or {}
        try:
            self._store.set_many({AUTH_TOKEN: token, USER_INFO: user, DEVICE_INFO: device})
        except StoreError as e:
            self._record_failure(ErrorKind.UNKNOWN, uid)
            raise AuthError(ErrorKind.UNKNOWN, f"Session could not be saved: {e}") from e
        self._token = token
        self._log.info("Device %s authenticated", uid)
        self._record(AuditEventType.AUTH_SUCCESS, "Device authenticated", uid=uid)

        if device.get("requireUidRefresh"):
            self._refresh_uid(token)
        self._reconcile_uid(token, device.get("uid"))

        return AuthSession(uid=self._identity.get_identity(), token=token, user=user, device=device)

    def _auth_error(self, error: TransportError) -> AuthError:
        if error.kind is ErrorKind.NETWORK:
            return AuthError(
                ErrorKind.NETWORK,
                f"Network failure after {self._auth_policy.max_retries} retries, check your connection",
            )
        if error.kind is ErrorKind.UNAUTHORIZED:
            message = UNAUTHORIZED_MESSAGE
            if self._admin_contact:
                message += f", contact: {self._admin_contact}"
            return AuthError(ErrorKind.UNAUTHORIZED, message)
        return AuthError(
            ErrorKind.UNKNOWN,
            error.server_message or error.message or "Unknown authentication error",
        )

    def _refresh_uid(self, token: str) -> None:
        """The server asked for a fresh UID: re-derive and confirm."""
        self._log.info("Server requested a UID refresh")
        try:
            new_uid, _ = self._identity.rederive()
            self._transport.request(
                "POST", "/desktop/clear-uid-refresh", json={"uid": new_uid}, token=token
            )
        except (TransportError, StoreError) as e:
            self._log.warning("UID refresh not confirmed: %s", e)
            return

        self._record(AuditEventType.UID_RESET, "UID reset requested by server", uid=new_uid)
        self._events.notify(Notice(
            kind="info",
            title="Device UID reset",
            message="The administrator reset this device's identity. A new UID has been generated.",
            detail=f"New UID: {new_uid}",
        ))

    def _reconcile_uid(self, token: str, server_uid: Optional[str]) -> None:
        """Tell the server about a locally re-derived UID that differs from its record."""
        try:
            current_uid, _ = self._identity.rederive()
            if not server_uid or server_uid == current_uid:
                return
            self._log.info("Server UID %s differs from local UID %s, updating", server_uid, current_uid)
            body = self._transport.request(
                "POST", "/desktop/update-uid", json={"newUid": current_uid}, token=token
            )
            if body.get("success"):
                self._identity.acknowledge_migration()
            else:
                self._log.warning("UID update rejected: %s", body.get("message"))
        except (TransportError, StoreError) as e:
            self._log.warning("UID reconciliation failed: %s", e)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self) -> Optional[Dict[str, Any]]:
        """
        Verify the session with the server.

        A 401 triggers one re-authentication followed by one more verify.

        Returns:
            The session info the server reports ({} when it sends none),
            or None when verification failed or was rejected
        """
        return self._verify(allow_reauth=True)

    def _verify(self, allow_reauth: bool) -> Optional[Dict[str, Any]]:
        token = self._token
        if not token:
            self._log.info("No session to verify")
            return None
        uid = self._identity.get_identity()

        try:
            body = self._with_retries(
                "verify",
                self._verify_policy,
                lambda: self._transport.request(
                    "POST", "/desktop/verify-device", json={"uid": uid}, token=token, timeout=VERIFY_TIMEOUT
                ),
            )
        except TransportError as e:
            if e.kind is ErrorKind.SESSION_EXPIRED and allow_reauth:
                self._log.info("Session expired, re-authenticating")
                self._record(AuditEventType.SESSION_EXPIRED, "Session expired", uid=uid)
                try:
                    self.authenticate()
                except (AuthError, StoreError) as auth_error:
                    self._log.warning("Re-authentication failed: %s", auth_error)
                    return None
                return self._verify(allow_reauth=False)
            self._log.warning("Verification failed: %s", e.message)
            return None

        if not body.get("success"):
            self._log.warning("Verification rejected: %s", body.get("message") or "no reason given")
            return None

        return body.get("data") or {}

    # ------------------------------------------------------------------
    # Migration and connectivity
    # ------------------------------------------------------------------

    def smart_migrate(self) -> Optional[MigrationResult]:
        """
        Ask the server whether data bound to an older UID should move here.

        On a completed migration the local session is cleared, since it
        belonged to the old UID.
        """
        uid = self._identity.get_identity()
        try:
            body = self._transport.request(
                "POST", "/desktop/smart-migrate", json={"currentUid": uid}, timeout=MIGRATE_TIMEOUT
            )
        except TransportError as e:
            self._log.warning("Smart migration check failed: %s", e.message)
            return None

        data = body.get("data") or {}
        result = MigrationResult(
            migrated=bool(body.get("migrated")),
            message=body.get("message") or "",
            points=data.get("points"),
        )
        if body.get("success") and result.migrated:
            self._log.info("Server migrated data to UID %s", uid)
            self.clear_session()
            self._identity.acknowledge_migration()
            self._events.publish(MIGRATION_SUCCESS, {"message": result.message, "points": result.points})
        return result

    def check_connectivity(self) -> Dict[str, Any]:
        """Report general internet reachability and backend health."""
        return {
            "network": self._transport.probe(self._probe_url, timeout=PROBE_TIMEOUT),
            "backend": self._transport.is_healthy(timeout=HEALTH_TIMEOUT),
            "apiUrl": self.api_base_url,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _with_retries(
        self,
        operation: str,
        policy: RetryPolicy,
        call: Callable[[], Dict[str, Any]],
    ) -> Dict[str, Any]:
        attempt = 0
        while True:
            try:
                return call()
            except TransportError as e:
                if not e.is_transient or attempt >= policy.max_retries:
                    raise
                attempt += 1
                self._log.warning(
                    "%s failed (%s), retry %d/%d in %.1fs",
                    operation,
                    e.cause.value if e.cause else e.kind.value,
                    attempt,
                    policy.max_retries,
                    policy.delay_seconds,
                )
                self._sleep(policy.delay_seconds)

    def _record_failure(self, kind: ErrorKind, uid: Optional[str]) -> None:
        self._record(
            AuditEventType.AUTH_FAILURE,
            "Authentication failed",
            AuditSeverity.WARNING,
            uid=uid,
            details={"kind": kind.value},
        )

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

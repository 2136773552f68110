"""
Device Authentication Runtime
=============================

Constructs the services once at startup and injects them into each other.

Startup:
1. Resolve the device identity (legacy UIDs are upgraded here)
2. Restore a persisted session and start periodic verification
3. Schedule a smart-migration check shortly after startup
4. Start the loopback control server
5. Start the update orchestrator
6. Publish ``init-complete``
"""

from __future__ import annotations

import logging
from typing import Optional

from deviceauth.core.auth.auth_client import AuthClient, AuthSession, resolve_api_base_url
from deviceauth.core.auth.scheduler import VerificationScheduler
from deviceauth.core.auth.transport import BackendTransport
from deviceauth.core.config import DeviceAuthConfig
from deviceauth.core.device.hardware_fingerprint import FingerprintCollector, HardwareReader
from deviceauth.core.device.identity import IdentityManager
from deviceauth.core.events import INIT_COMPLETE, EventBus
from deviceauth.core.updater import FeedUpdateChecker, UpdateOrchestrator
from deviceauth.db.kv_store import KeyValueStore
from deviceauth.security.audit import AuditEventType, TamperAwareAuditLog
from deviceauth.utils.concurrency import SingleFlight
from deviceauth.utils.timers import OneShotTimer
from deviceauth.web.control_server import ControlServer, create_control_app


class DeviceAuthRuntime:
    """
    Owner of every long-lived service.

    Usage:
        with DeviceAuthRuntime(DeviceAuthConfig.load()) as runtime:
            runtime.authenticate()

    Tests may pass their own transport or hardware reader.
    """

    def __init__(
        self,
        config: DeviceAuthConfig,
        transport: Optional[BackendTransport] = None,
        reader: Optional[HardwareReader] = None,
    ) -> None:
        self._config = config
        self._log = logging.getLogger("deviceauth.runtime")

        self.store = KeyValueStore(config.paths.state_db)
        self.audit = TamperAwareAuditLog(config.paths.audit_log)
        self.events = EventBus()
        flight = SingleFlight()

        self.identity = IdentityManager(
            self.store,
            FingerprintCollector(self.store, reader),
            salt=config.remote.uid_salt,
            audit=self.audit,
            flight=flight,
        )
        self.transport = transport or BackendTransport(
            resolve_api_base_url(config.remote.api_base_url, self.store),
            config.app.user_agent,
        )
        self.client = AuthClient(
            self.store,
            self.identity,
            self.transport,
            events=self.events,
            audit=self.audit,
            admin_contact=config.remote.admin_contact,
            connectivity_probe_url=config.remote.connectivity_probe_url,
            flight=flight,
        )
        self.scheduler = VerificationScheduler(
            self.client.verify, interval_seconds=config.scheduler.verify_interval_seconds
        )

        feed_url = config.updater.effective_feed_url
        self.updater = UpdateOrchestrator(
            self.events,
            FeedUpdateChecker(feed_url, config.app.user_agent) if feed_url else None,
            current_version=config.app.version,
            interval_seconds=config.scheduler.update_check_interval_seconds,
        )

        self.server: Optional[ControlServer] = None
        if config.server.enabled:
            app = create_control_app(
                self.identity,
                self.client,
                self.events,
                authenticate=self.authenticate,
                version=config.app.version,
            )
            self.server = ControlServer(app, config.server.host, config.server.port)

        self._migrate_timer: Optional[OneShotTimer] = None
        self._started = False

    @property
    def config(self) -> DeviceAuthConfig:
        return self._config

    @property
    def is_started(self) -> bool:
        return self._started

    def start(self) -> None:
        """Run the startup sequence. Idempotent."""
        if self._started:
            return
        self._started = True

        uid = self.identity.get_identity()
        self._log.info("%s %s starting, device UID %s", self._config.app.app_name, self._config.app.version, uid)
        self._audit(AuditEventType.STARTUP, "Runtime started", uid)
        intent = self.identity.migration_intent()
        if intent is not None:
            self._log.info("UID migration pending from %s to %s", intent.from_uid, intent.to_uid)

        if self.client.restore_session():
            self.scheduler.start()

        self._migrate_timer = OneShotTimer(
            self._config.scheduler.migrate_delay_seconds, self.client.smart_migrate, name="smart-migrate"
        )
        self._migrate_timer.start()

        if self.server is not None:
            try:
                self.server.start()
            except OSError as e:
                self._log.error(
                    "Control server could not bind %s:%d: %s",
                    self._config.server.host,
                    self._config.server.port,
                    e,
                )

        self.updater.start()
        self.events.publish(INIT_COMPLETE, {"uid": uid})

    def authenticate(self) -> AuthSession:
        """Authenticate and (re)start periodic verification."""
        session = self.client.authenticate()
        self.scheduler.start()
        return session

    def stop(self) -> None:
        """Cancel timers and stop the control server. In-flight requests are not interrupted."""
        if not self._started:
            return
        self._started = False

        if self._migrate_timer is not None:
            self._migrate_timer.cancel()
            self._migrate_timer = None
        self.scheduler.stop()
        self.updater.stop()
        if self.server is not None:
            self.server.stop()
        self.transport.close()

        self._audit(AuditEventType.SHUTDOWN, "Runtime stopped", self.identity.uid)
        self._log.info("Runtime stopped")

    def _audit(self, event_type: AuditEventType, description: str, uid: Optional[str]) -> None:
        try:
            self.audit.log(event_type, description, uid=uid)
        except OSError as e:
            self._log.warning("Audit entry %s not written: %s", event_type.value, e)

    def __enter__(self) -> DeviceAuthRuntime:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

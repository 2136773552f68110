"""
Configuration Module
====================

Immutable, environment-aware configuration for the device identity client.

Features:
- Immutable configuration after initialization
- Environment variable overrides (DEVICEAUTH_SECTION__KEY)
- Optional .env file loaded through python-dotenv
- Credential-like keys are never read from the environment
- OS-aware path defaults
"""

from __future__ import annotations

import hashlib
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, Any, Optional

from dotenv import load_dotenv

from deviceauth.utils.paths import get_app_data_dir, get_app_config_dir, get_app_log_dir


APP_NAME: Final[str] = "DeviceAuth"
APP_VERSION: Final[str] = "1.0.0"

DEFAULT_API_BASE_URL: Final[str] = "http://localhost:5000/api"
DEFAULT_UID_SALT: Final[str] = "deviceauth-salt-v2"
DEFAULT_CONNECTIVITY_PROBE_URL: Final[str] = "https://www.baidu.com"
DEFAULT_CONTROL_PORT: Final[int] = 3001

_LOOPBACK_HOSTS: Final[frozenset[str]] = frozenset({"127.0.0.1", "localhost", "::1"})
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Values matching these fragments are credentials and must not come from env
_SENSITIVE_KEYS: Final[frozenset[str]] = frozenset({
    "password", "secret", "token", "private", "credential",
})


def _is_sensitive_key(key: str) -> bool:
    """Check if a configuration key might contain sensitive data."""
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class PathConfig:
    """Immutable path configuration with OS-aware defaults."""

    data_dir: Path = field(default_factory=get_app_data_dir)
    config_dir: Path = field(default_factory=get_app_config_dir)
    log_dir: Path = field(default_factory=get_app_log_dir)

    def __post_init__(self) -> None:
        for field_name in ["data_dir", "config_dir", "log_dir"]:
            path = getattr(self, field_name)
            if not path.is_absolute():
                raise ValueError(f"{field_name} must be an absolute path: {path}")

    @property
    def state_db(self) -> Path:
        """SQLite file backing the persistent key-value store."""
        return self.data_dir / "state.db"

    @property
    def audit_log(self) -> Path:
        return self.data_dir / "audit.log"


@dataclass(frozen=True, slots=True)
class RemoteConfig:
    """
    Remote authority settings.

    ``api_base_url`` is an override: when None the persisted value set
    through the control plane is used, then DEFAULT_API_BASE_URL.
    """

    api_base_url: Optional[str] = None
    uid_salt: str = DEFAULT_UID_SALT
    admin_contact: str = ""
    connectivity_probe_url: str = DEFAULT_CONNECTIVITY_PROBE_URL

    def __post_init__(self) -> None:
        if self.api_base_url is not None and not self.api_base_url.startswith(("http://", "https://")):
            raise ValueError(f"api_base_url must be an http(s) URL: {self.api_base_url}")
        if not self.uid_salt:
            raise ValueError("uid_salt cannot be empty")


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Loopback control-plane server settings."""

    host: str = "127.0.0.1"
    port: int = DEFAULT_CONTROL_PORT
    enabled: bool = True

    def __post_init__(self) -> None:
        # The control plane is never exposed beyond the local machine
        if self.host not in _LOOPBACK_HOSTS:
            raise ValueError(f"Control server must bind to loopback, got {self.host}")
        if not 0 <= self.port <= 65535:
            raise ValueError(f"Invalid control server port: {self.port}")


@dataclass(frozen=True, slots=True)
class SchedulerConfig:
    """Timer periods, in seconds."""

    verify_interval_seconds: float = 5 * 60
    update_check_interval_seconds: float = 6 * 60 * 60
    migrate_delay_seconds: float = 2.0

    def __post_init__(self) -> None:
        if self.verify_interval_seconds <= 0:
            raise ValueError("verify_interval_seconds must be positive")
        if self.update_check_interval_seconds <= 0:
            raise ValueError("update_check_interval_seconds must be positive")
        if self.migrate_delay_seconds < 0:
            raise ValueError("migrate_delay_seconds cannot be negative")


@dataclass(frozen=True, slots=True)
class UpdaterConfig:
    """Custom update feed. Ignored unless it is an http(s) URL."""

    feed_url: Optional[str] = None

    @property
    def effective_feed_url(self) -> Optional[str]:
        if self.feed_url and self.feed_url.startswith("http"):
            return self.feed_url.rstrip("/")
        return None


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Immutable logging configuration."""

    level: str = "INFO"
    max_file_size_bytes: int = 10 * 1024 * 1024  # 10 MB
    backup_count: int = 5
    enable_console: bool = True
    enable_file: bool = True

    def __post_init__(self) -> None:
        if self.level.upper() not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {self.level}")


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Immutable application configuration."""

    app_name: str = APP_NAME
    version: str = APP_VERSION

    @property
    def user_agent(self) -> str:
        return f"{self.app_name}-Desktop/{self.version}"


class DeviceAuthConfig:
    """
    Centralized, immutable configuration loader with environment override support.

    Usage:
        config = DeviceAuthConfig.load()
        salt = config.remote.uid_salt
        port = config.server.port

    Environment variables are prefixed with DEVICEAUTH_ and use double
    underscores between section and key:

        DEVICEAUTH_REMOTE__API_BASE_URL=https://auth.example.com/api
        DEVICEAUTH_REMOTE__UID_SALT=my-salt
        DEVICEAUTH_REMOTE__ADMIN_CONTACT=admin@example.com
        DEVICEAUTH_UPDATER__FEED_URL=https://updates.example.com/desktop
        DEVICEAUTH_LOGGING__LEVEL=DEBUG
    """

    __slots__ = (
        "_paths", "_remote", "_server", "_scheduler", "_updater",
        "_logging", "_app", "_frozen", "_config_hash",
    )

    def __init__(
        self,
        paths: Optional[PathConfig] = None,
        remote: Optional[RemoteConfig] = None,
        server: Optional[ServerConfig] = None,
        scheduler: Optional[SchedulerConfig] = None,
        updater: Optional[UpdaterConfig] = None,
        logging: Optional[LoggingConfig] = None,
        app: Optional[AppConfig] = None,
    ) -> None:
        """Initialize configuration. Use DeviceAuthConfig.load() for standard initialization."""
        object.__setattr__(self, "_frozen", False)
        object.__setattr__(self, "_paths", paths or PathConfig())
        object.__setattr__(self, "_remote", remote or RemoteConfig())
        object.__setattr__(self, "_server", server or ServerConfig())
        object.__setattr__(self, "_scheduler", scheduler or SchedulerConfig())
        object.__setattr__(self, "_updater", updater or UpdaterConfig())
        object.__setattr__(self, "_logging", logging or LoggingConfig())
        object.__setattr__(self, "_app", app or AppConfig())
        object.__setattr__(self, "_config_hash", self._compute_hash())
        object.__setattr__(self, "_frozen", True)

    def _compute_hash(self) -> str:
        """Compute a short hash of the configuration for log correlation."""
        config_str = (
            f"{self._paths}|{self._remote.api_base_url}|{self._server}|"
            f"{self._scheduler}|{self._updater}|{self._logging}|{self._app}"
        )
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @property
    def paths(self) -> PathConfig:
        return self._paths

    @property
    def remote(self) -> RemoteConfig:
        return self._remote

    @property
    def server(self) -> ServerConfig:
        return self._server

    @property
    def scheduler(self) -> SchedulerConfig:
        return self._scheduler

    @property
    def updater(self) -> UpdaterConfig:
        return self._updater

    @property
    def logging(self) -> LoggingConfig:
        return self._logging

    @property
    def app(self) -> AppConfig:
        return self._app

    @property
    def config_hash(self) -> str:
        return self._config_hash

    @classmethod
    def load(
        cls,
        env_prefix: str = "DEVICEAUTH",
        env_file: Optional[Path | str] = None,
    ) -> DeviceAuthConfig:
        """
        Load configuration with environment variable overrides.

        Args:
            env_prefix: Prefix for environment variables (default: DEVICEAUTH)
            env_file: Optional .env file read before the environment is parsed.
                Variables already present in the environment win.

        Returns:
            Configured DeviceAuthConfig instance

        Raises:
            ValueError: If an override has an invalid value
        """
        if env_file is not None:
            load_dotenv(dotenv_path=env_file, override=False)

        env_overrides = cls._parse_env_overrides(env_prefix)

        paths_kwargs: dict[str, Any] = {}
        for key in ("data_dir", "config_dir", "log_dir"):
            if f"paths.{key}" in env_overrides:
                paths_kwargs[key] = Path(env_overrides[f"paths.{key}"])

        remote_kwargs: dict[str, Any] = {}
        if "remote.api_base_url" in env_overrides:
            remote_kwargs["api_base_url"] = env_overrides["remote.api_base_url"].rstrip("/")
        for key in ("uid_salt", "admin_contact", "connectivity_probe_url"):
            if f"remote.{key}" in env_overrides:
                remote_kwargs[key] = env_overrides[f"remote.{key}"]

        server_kwargs: dict[str, Any] = {}
        if "server.host" in env_overrides:
            server_kwargs["host"] = env_overrides["server.host"]
        if "server.port" in env_overrides:
            server_kwargs["port"] = int(env_overrides["server.port"])
        if "server.enabled" in env_overrides:
            server_kwargs["enabled"] = _parse_bool(env_overrides["server.enabled"])

        scheduler_kwargs: dict[str, Any] = {}
        for key in ("verify_interval_seconds", "update_check_interval_seconds", "migrate_delay_seconds"):
            if f"scheduler.{key}" in env_overrides:
                scheduler_kwargs[key] = float(env_overrides[f"scheduler.{key}"])

        updater_kwargs: dict[str, Any] = {}
        if "updater.feed_url" in env_overrides:
            updater_kwargs["feed_url"] = env_overrides["updater.feed_url"]

        logging_kwargs: dict[str, Any] = {}
        if "logging.level" in env_overrides:
            logging_kwargs["level"] = env_overrides["logging.level"]
        if "logging.enable_console" in env_overrides:
            logging_kwargs["enable_console"] = _parse_bool(env_overrides["logging.enable_console"])
        if "logging.enable_file" in env_overrides:
            logging_kwargs["enable_file"] = _parse_bool(env_overrides["logging.enable_file"])

        return cls(
            paths=PathConfig(**paths_kwargs) if paths_kwargs else None,
            remote=RemoteConfig(**remote_kwargs) if remote_kwargs else None,
            server=ServerConfig(**server_kwargs) if server_kwargs else None,
            scheduler=SchedulerConfig(**scheduler_kwargs) if scheduler_kwargs else None,
            updater=UpdaterConfig(**updater_kwargs) if updater_kwargs else None,
            logging=LoggingConfig(**logging_kwargs) if logging_kwargs else None,
        )

    @staticmethod
    def _parse_env_overrides(prefix: str) -> dict[str, str]:
        """Parse environment variables with the given prefix."""
        overrides: dict[str, str] = {}
        prefix_upper = f"{prefix.upper()}_"

        for key, value in os.environ.items():
            if key.startswith(prefix_upper):
                # DEVICEAUTH_SECTION__KEY -> section.key
                config_key = key[len(prefix_upper):].lower().replace("__", ".")

                if _is_sensitive_key(config_key):
                    continue

                overrides[config_key] = value

        return overrides

    def ensure_directories(self) -> None:
        """Create all required directories with owner-only permissions."""
        import stat

        for directory in (self._paths.data_dir, self._paths.config_dir, self._paths.log_dir):
            directory.mkdir(parents=True, exist_ok=True)
            if platform.system().lower() != "windows":
                directory.chmod(stat.S_IRWXU)

    def __repr__(self) -> str:
        return f"DeviceAuthConfig(hash={self._config_hash}, app={self._app.app_name})"

    def __setattr__(self, name: str, value: Any) -> None:
        """Prevent modification after initialization."""
        if hasattr(self, "_frozen") and self._frozen:
            raise AttributeError("DeviceAuthConfig is immutable after initialization")
        super().__setattr__(name, value)

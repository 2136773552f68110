"""
Tests for configuration loading and validation.
"""

from pathlib import Path

import pytest

from deviceauth.core.config import (
    DEFAULT_UID_SALT,
    AppConfig,
    DeviceAuthConfig,
    PathConfig,
    RemoteConfig,
    SchedulerConfig,
    ServerConfig,
    UpdaterConfig,
)

PREFIX = "DATEST"


class TestDefaults:

    def test_default_values(self):
        config = DeviceAuthConfig()

        assert config.remote.api_base_url is None
        assert config.remote.uid_salt == DEFAULT_UID_SALT
        assert config.server.host == "127.0.0.1"
        assert config.server.port == 3001
        assert config.scheduler.verify_interval_seconds == 300
        assert config.scheduler.update_check_interval_seconds == 6 * 60 * 60
        assert config.scheduler.migrate_delay_seconds == 2.0
        assert config.updater.effective_feed_url is None

    def test_user_agent(self):
        assert AppConfig(version="2.0.1").user_agent == "DeviceAuth-Desktop/2.0.1"

    def test_state_paths(self, tmp_path):
        paths = PathConfig(data_dir=tmp_path, config_dir=tmp_path, log_dir=tmp_path)

        assert paths.state_db == tmp_path / "state.db"
        assert paths.audit_log == tmp_path / "audit.log"

    def test_immutable(self):
        config = DeviceAuthConfig()
        with pytest.raises(AttributeError):
            config.something = 1


class TestValidation:

    def test_relative_path_rejected(self):
        with pytest.raises(ValueError):
            PathConfig(data_dir=Path("relative"))

    def test_non_loopback_host_rejected(self):
        with pytest.raises(ValueError):
            ServerConfig(host="0.0.0.0")

    def test_non_http_api_url_rejected(self):
        with pytest.raises(ValueError):
            RemoteConfig(api_base_url="ftp://example.com")

    def test_empty_salt_rejected(self):
        with pytest.raises(ValueError):
            RemoteConfig(uid_salt="")

    def test_non_positive_interval_rejected(self):
        with pytest.raises(ValueError):
            SchedulerConfig(verify_interval_seconds=0)

    def test_feed_must_be_http(self):
        assert UpdaterConfig(feed_url="file:///tmp/feed").effective_feed_url is None
        assert UpdaterConfig(feed_url="https://updates.example.com/").effective_feed_url == (
            "https://updates.example.com"
        )


class TestEnvironmentOverrides:

    def test_overrides_are_applied(self, monkeypatch, tmp_path):
        monkeypatch.setenv(f"{PREFIX}_REMOTE__API_BASE_URL", "https://auth.example.com/api/")
        monkeypatch.setenv(f"{PREFIX}_REMOTE__ADMIN_CONTACT", "admin@example.com")
        monkeypatch.setenv(f"{PREFIX}_SERVER__PORT", "4100")
        monkeypatch.setenv(f"{PREFIX}_SCHEDULER__VERIFY_INTERVAL_SECONDS", "60")
        monkeypatch.setenv(f"{PREFIX}_PATHS__DATA_DIR", str(tmp_path))
        monkeypatch.setenv(f"{PREFIX}_LOGGING__ENABLE_FILE", "false")

        config = DeviceAuthConfig.load(env_prefix=PREFIX)

        assert config.remote.api_base_url == "https://auth.example.com/api"
        assert config.remote.admin_contact == "admin@example.com"
        assert config.server.port == 4100
        assert config.scheduler.verify_interval_seconds == 60
        assert config.paths.data_dir == tmp_path
        assert config.logging.enable_file is False

    def test_sensitive_keys_are_ignored(self, monkeypatch):
        monkeypatch.setenv(f"{PREFIX}_REMOTE__AUTH_TOKEN", "tok-123")
        monkeypatch.setenv(f"{PREFIX}_REMOTE__CLIENT_SECRET", "s3cret")
        monkeypatch.setenv(f"{PREFIX}_REMOTE__UID_SALT", "custom-salt")

        overrides = DeviceAuthConfig._parse_env_overrides(PREFIX)

        assert overrides == {"remote.uid_salt": "custom-salt"}

    def test_invalid_override_raises(self, monkeypatch):
        monkeypatch.setenv(f"{PREFIX}_SERVER__HOST", "0.0.0.0")

        with pytest.raises(ValueError):
            DeviceAuthConfig.load(env_prefix=PREFIX)

    def test_env_file(self, monkeypatch, tmp_path):
        name = f"{PREFIX}_REMOTE__ADMIN_CONTACT"
        # Registers the variable with monkeypatch so teardown removes what the .env file sets
        monkeypatch.setenv(name, "placeholder")
        monkeypatch.delenv(name)
        env_file = tmp_path / ".env"
        env_file.write_text(f"{name}=ops@example.com\n", encoding="utf-8")

        config = DeviceAuthConfig.load(env_prefix=PREFIX, env_file=env_file)

        assert config.remote.admin_contact == "ops@example.com"

    def test_environment_wins_over_env_file(self, monkeypatch, tmp_path):
        name = f"{PREFIX}_REMOTE__ADMIN_CONTACT"
        monkeypatch.setenv(name, "env@example.com")
        env_file = tmp_path / ".env"
        env_file.write_text(f"{name}=file@example.com\n", encoding="utf-8")

        config = DeviceAuthConfig.load(env_prefix=PREFIX, env_file=env_file)

        assert config.remote.admin_contact == "env@example.com"

    def test_config_hash_changes_with_values(self):
        first = DeviceAuthConfig(remote=RemoteConfig(api_base_url="https://a.example.com"))
        second = DeviceAuthConfig(remote=RemoteConfig(api_base_url="https://b.example.com"))
        assert first.config_hash != second.config_hash

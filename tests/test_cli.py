"""
Tests for the command line entry point.
"""

import json
from unittest.mock import patch

import pytest

from conftest import StubReader
from deviceauth.cli import build_parser, main
from deviceauth.core.device.identity import derive_uid


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    monkeypatch.setenv("DEVICEAUTH_PATHS__DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("DEVICEAUTH_PATHS__CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("DEVICEAUTH_PATHS__LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("DEVICEAUTH_REMOTE__UID_SALT", "cli-salt")
    monkeypatch.setenv("DEVICEAUTH_SERVER__ENABLED", "false")
    with patch("deviceauth.cli.configure_root_logger"), patch(
        "deviceauth.core.device.hardware_fingerprint.get_hardware_reader",
        return_value=StubReader({"system_uuid": "ABC123"}),
    ):
        yield


def test_uid_command(cli_env, capsys):
    assert main(["uid"]) == 0

    output = json.loads(capsys.readouterr().out)
    assert output == {"uid": derive_uid("board_uuid:ABC123", "cli-salt"), "sourceCount": 1, "fallback": False}


def test_show_command(cli_env, capsys):
    assert main(["show"]) == 0

    output = json.loads(capsys.readouterr().out)
    assert output["hasToken"] is False
    assert output["apiBaseUrl"] == "http://localhost:5000/api"


def test_verify_without_session_fails(cli_env, capsys):
    assert main(["verify"]) == 1
    assert json.loads(capsys.readouterr().out)["success"] is False


def test_invalid_config_exits_2(cli_env, monkeypatch, capsys):
    monkeypatch.setenv("DEVICEAUTH_SERVER__HOST", "0.0.0.0")

    assert main(["uid"]) == 2
    assert "Invalid configuration" in capsys.readouterr().err


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_log_level_is_case_insensitive():
    assert build_parser().parse_args(["--log-level", "debug", "uid"]).log_level == "DEBUG"


def test_unknown_log_level_is_rejected(capsys):
    with pytest.raises(SystemExit) as exc_info:
        build_parser().parse_args(["--log-level", "bogus", "uid"])

    assert exc_info.value.code == 2
    assert "invalid choice" in capsys.readouterr().err

"""
Path Utilities
==============

OS-aware application directories.
"""

from __future__ import annotations

import os
import platform
from pathlib import Path
from typing import Final

DEFAULT_APP_DIR_NAME: Final[str] = "DeviceAuth"


def _local_app_data() -> Path:
    return Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))


def get_app_data_dir(app_name: str = DEFAULT_APP_DIR_NAME) -> Path:
    """
    Get the OS-appropriate application data directory.

    Args:
        app_name: Name of the application

    Returns:
        Path to application data directory
    """
    system = platform.system().lower()

    if system == "windows":
        base = _local_app_data()
    elif system == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    return base / app_name


def get_app_config_dir(app_name: str = DEFAULT_APP_DIR_NAME) -> Path:
    """Get the OS-appropriate configuration directory."""
    system = platform.system().lower()

    if system == "windows":
        base = _local_app_data()
    elif system == "darwin":
        base = Path.home() / "Library" / "Preferences"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))

    return base / app_name


def get_app_log_dir(app_name: str = DEFAULT_APP_DIR_NAME) -> Path:
    """Get the OS-appropriate log directory."""
    system = platform.system().lower()

    if system == "windows":
        return _local_app_data() / app_name / "Logs"
    elif system == "darwin":
        return Path.home() / "Library" / "Logs" / app_name
    else:
        state_home = Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state"))
        return state_home / app_name / "logs"

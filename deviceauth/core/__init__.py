"""
Core module - Configuration, logging, errors and the event stream.
"""

from deviceauth.core.config import DeviceAuthConfig
from deviceauth.core.errors import AuthError, DeviceAuthError, ErrorKind, TransportError
from deviceauth.core.logging import SecureLogFilter, configure_root_logger

__all__ = [
    "AuthError",
    "DeviceAuthConfig",
    "DeviceAuthError",
    "ErrorKind",
    "SecureLogFilter",
    "TransportError",
    "configure_root_logger",
]

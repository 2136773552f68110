"""
DeviceAuth - Hardware-Bound Device Identity Client
==================================================

Derives a stable device UID from hardware identifiers, authenticates it
against a remote authority and exposes a loopback control plane for a
local UI.

Security Notice:
- Session tokens are never logged
- The control plane binds to loopback only
- Identity derivation never blocks startup (fallback UID)
"""

from deviceauth.core.config import DeviceAuthConfig
from deviceauth.runtime import DeviceAuthRuntime

__version__ = "1.0.0"
__author__ = "DeviceAuth Team"

__all__ = ["DeviceAuthConfig", "DeviceAuthRuntime", "__version__"]

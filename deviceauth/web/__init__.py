"""
Web module - Loopback control plane for the local UI.
"""

from deviceauth.web.control_server import ControlServer, create_control_app

__all__ = ["ControlServer", "create_control_app"]

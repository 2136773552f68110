"""
Utils module - Paths, validation, timers and concurrency helpers.
"""

from deviceauth.utils.concurrency import SingleFlight
from deviceauth.utils.paths import get_app_data_dir, get_app_log_dir
from deviceauth.utils.timers import OneShotTimer, RepeatingTimer
from deviceauth.utils.validators import normalize_api_base_url

__all__ = [
    "OneShotTimer",
    "RepeatingTimer",
    "SingleFlight",
    "get_app_data_dir",
    "get_app_log_dir",
    "normalize_api_base_url",
]

"""
Validation Utilities
====================

Input validation for values that arrive over the local control plane.
"""

from __future__ import annotations

from typing import Any, Final
from urllib.parse import urlsplit

from deviceauth.core.errors import ConfigValidationError

_MAX_URL_LENGTH: Final[int] = 2048


def validate_string_safe(
    value: Any,
    min_length: int = 0,
    max_length: int = 1000,
    allow_empty: bool = False,
    field_name: str = "value",
) -> str:
    """
    Validate a string value for safety.

    Args:
        value: The value to validate
        min_length: Minimum allowed length
        max_length: Maximum allowed length
        allow_empty: If False, empty strings are rejected
        field_name: Name of the field for error messages

    Returns:
        Validated string

    Raises:
        ConfigValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ConfigValidationError(f"{field_name} must be a string")

    if not allow_empty and not value:
        raise ConfigValidationError(f"{field_name} cannot be empty")

    if len(value) < min_length:
        raise ConfigValidationError(f"{field_name} must be at least {min_length} characters")

    if len(value) > max_length:
        raise ConfigValidationError(f"{field_name} must be at most {max_length} characters")

    if "\x00" in value:
        raise ConfigValidationError(f"{field_name} contains invalid characters")

    return value


def normalize_api_base_url(value: Any) -> str:
    """
    Validate an API base URL and strip one trailing slash.

    Raises:
        ConfigValidationError: If the value is not an http(s) URL
    """
    url = validate_string_safe(value, max_length=_MAX_URL_LENGTH, field_name="apiBaseUrl").strip()
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigValidationError("apiBaseUrl must be an http(s) URL")
    if url.endswith("/"):
        url = url[:-1]
    return url

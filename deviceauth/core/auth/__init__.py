"""
Authentication against the remote authority.
"""

from deviceauth.core.auth.auth_client import (
    AuthClient,
    AuthSession,
    MigrationResult,
    RetryPolicy,
    resolve_api_base_url,
)
from deviceauth.core.auth.scheduler import VerificationScheduler
from deviceauth.core.auth.transport import BackendTransport

__all__ = [
    "AuthClient",
    "AuthSession",
    "BackendTransport",
    "MigrationResult",
    "RetryPolicy",
    "VerificationScheduler",
    "resolve_api_base_url",
]

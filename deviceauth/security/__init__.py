"""
Security module - Audit trail for identity and authentication events.
"""

from deviceauth.security.audit import (
    AuditEvent,
    AuditEventType,
    AuditSeverity,
    TamperAwareAuditLog,
)

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditSeverity",
    "TamperAwareAuditLog",
]

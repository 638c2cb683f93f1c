# SealVault - Core Module
#
# Shared functionality across SealVault modules:
# - Audit logging
# - SQLite connection helper

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    get_audit_logger,
    log_security_event,
)
from .db import connect, transaction

__all__ = [
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "log_security_event",
    # Database
    "connect",
    "transaction",
]

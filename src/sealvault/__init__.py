# SealVault - Main Package
#
# Zero-knowledge password vault: entries are encrypted client-side under
# per-vault keys; the server stores only sealed keys and encrypted
# snapshots, and fans out access-filtered change notifications.

__version__ = "0.1.0"
__author__ = "SealVault Team"
__description__ = "Zero-knowledge password vault with team sharing and live sync"

from .core import EventSeverity, EventType, get_audit_logger
from .exceptions import (
    AuthorizationError,
    CredentialError,
    KeyMismatchError,
    SealVaultError,
    SnapshotCorruptError,
    TransportError,
)

__all__ = [
    "__version__",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "SealVaultError",
    "CredentialError",
    "KeyMismatchError",
    "SnapshotCorruptError",
    "TransportError",
    "AuthorizationError",
]

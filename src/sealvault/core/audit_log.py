# SealVault - Audit Logging
#
# Append-only structured log of every security-relevant action: key setup
# and reset, session issue/revoke, vault creation, snapshot uploads, team
# membership changes, key rotation and shares.
# Secrets, key material and plaintext entries are NEVER passed to this log.

import json
import logging
import socket
import sys
import os
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog

AUDIT_LOGGER_NAME = "sealvault.audit"


class EventType(str, Enum):
    """Types of audit events."""
    # Identity
    KEYS_REGISTERED = "keys.registered"
    KEYS_RESET = "keys.reset"

    # Sessions
    SESSION_ISSUED = "session.issued"
    SESSION_REVOKED = "session.revoked"
    AUTH_FAILED = "auth.failed"

    # Vaults (client + server)
    VAULT_CREATED = "vault.created"
    VAULT_UNLOCKED = "vault.unlocked"
    VAULT_LOCKED = "vault.locked"
    VAULT_UNLOCK_FAILED = "vault.unlock.failed"
    BLOB_UPLOADED = "vault.blob.uploaded"
    SNAPSHOT_CORRUPT = "snapshot.corrupt"
    SNAPSHOT_EMPTY = "snapshot.empty"
    KEY_MISMATCH = "vault.key.mismatch"

    # Teams and sharing
    TEAM_CREATED = "team.created"
    TEAM_INVITE = "team.invite"
    TEAM_INVITE_ACCEPTED = "team.invite.accepted"
    TEAM_ROLE_UPDATED = "team.role.updated"
    TEAM_MEMBER_REMOVED = "team.member.removed"
    TEAM_KEY_ROTATED = "team.key.rotated"
    VAULT_SHARED = "vault.shared"

    # Administration
    ADMIN_GRANTED = "admin.granted"
    AUDIT_QUERIED = "admin.audit.queried"

    # System
    SYSTEM_START = "system.start"
    SYSTEM_STOP = "system.stop"


class EventSeverity(str, Enum):
    """Severity levels for audit events."""
    INFO = "info"
    INVESTIGATE = "investigate"
    ALERT = "alert"
    CRITICAL = "critical"


class AuditLogger:
    """
    Append-only audit logger.

    Features:
    - Structured JSON lines (structlog)
    - One file per day under log_dir
    - Automatic timestamp and event ID
    - Actor context (user id, session id) when provided
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Initialize audit logger.

        Args:
            log_dir: Directory for audit logs (default: ./audit_logs)
        """
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer()
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=False,
        )

        self._file_handler: Optional[logging.Handler] = None
        self._setup_file_handler()

        self.logger = structlog.get_logger(AUDIT_LOGGER_NAME)

    @property
    def log_file(self) -> Path:
        today = datetime.now().strftime("%Y-%m-%d")
        return self.log_dir / f"audit_{today}.log"

    def _setup_file_handler(self):
        """Attach a daily file handler to the dedicated audit logger."""
        stdlib_logger = logging.getLogger(AUDIT_LOGGER_NAME)
        for handler in list(stdlib_logger.handlers):
            if getattr(handler, "_sealvault_audit", False):
                stdlib_logger.removeHandler(handler)
                handler.close()

        file_handler = logging.FileHandler(self.log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter('%(message)s'))  # structlog handles formatting
        file_handler._sealvault_audit = True

        stdlib_logger.addHandler(file_handler)
        stdlib_logger.setLevel(logging.INFO)
        self._file_handler = file_handler

    def close(self):
        if self._file_handler is not None:
            logging.getLogger(AUDIT_LOGGER_NAME).removeHandler(self._file_handler)
            self._file_handler.close()
            self._file_handler = None

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        user_context: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Log an audit event (append-only).

        Args:
            event_type: Type of event
            severity: Severity level
            message: Human-readable description
            details: Additional event details (ids only, never secrets)
            user_context: Actor context (user_id, session_id)

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())
        event_data = {
            "event_id": event_id,
            "event_type": event_type.value,
            "severity": severity.value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "details": details or {},
            "user_context": user_context or self._get_default_user_context(),
        }
        self.logger.info("audit_event", **event_data)
        if self._file_handler is not None:
            self._file_handler.flush()
        return event_id

    def _get_default_user_context(self) -> Dict[str, Any]:
        """Get default context (OS user, hostname)."""
        return {
            "os_user": os.getenv("USERNAME") or os.getenv("USER"),
            "hostname": socket.gethostname(),
            "platform": sys.platform,
        }

    def _log_files(self, start_time: Optional[datetime], end_time: Optional[datetime]) -> List[Path]:
        files = []
        for path in sorted(self.log_dir.glob("audit_*.log")):
            day = path.stem[len("audit_"):]
            # File names use the local date; timestamps are UTC
            if start_time is not None and day < (start_time - timedelta(days=1)).strftime("%Y-%m-%d"):
                continue
            if end_time is not None and day > (end_time + timedelta(days=1)).strftime("%Y-%m-%d"):
                continue
            files.append(path)
        return files

    def query_events(
        self,
        event_types: Optional[List[EventType]] = None,
        severity: Optional[EventSeverity] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        actor_user_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """
        Query audit logs (forensic analysis).

        Args:
            event_types: Filter by event types
            severity: Filter by severity level
            start_time: Filter events at or after this time (aware datetime)
            end_time: Filter events at or before this time (aware datetime)
            actor_user_id: Filter by user_context.user_id
            limit: Maximum number of events to return (the newest are kept)

        Returns:
            list: Matching events, oldest first. Lines that are not audit
            JSON records are skipped.
        """
        wanted = {t.value for t in event_types} if event_types else None
        results: List[Dict[str, Any]] = []
        for path in self._log_files(start_time, end_time):
            with open(path, encoding="utf-8") as fh:
                for line in fh:
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if record.get("event") != "audit_event":
                        continue
                    if wanted is not None and record.get("event_type") not in wanted:
                        continue
                    if severity is not None and record.get("severity") != severity.value:
                        continue
                    if actor_user_id is not None and (record.get("user_context") or {}).get("user_id") != actor_user_id:
                        continue
                    if start_time is not None or end_time is not None:
                        try:
                            stamp = datetime.fromisoformat(record.get("timestamp", ""))
                        except ValueError:
                            continue
                        if start_time is not None and stamp < start_time:
                            continue
                        if end_time is not None and stamp > end_time:
                            continue
                    results.append(record)
        return results[-limit:] if limit else results


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        from ..config import get_settings
        _audit_logger = AuditLogger(get_settings().audit_dir)
    return _audit_logger


def log_security_event(
    event_type: EventType,
    severity: EventSeverity,
    message: str,
    **kwargs
) -> str:
    """
    Convenience function for logging audit events.

    Usage:
        log_security_event(
            EventType.TEAM_MEMBER_REMOVED,
            EventSeverity.ALERT,
            "Member removed from team",
            details={"team_id": team_id}
        )
    """
    return get_audit_logger().log_event(event_type, severity, message, **kwargs)

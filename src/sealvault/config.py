# SealVault - Runtime Configuration
#
# Settings are read from the process environment after loading an optional
# .env file from the working directory. Every knob has a safe default except
# the token secret, which is generated per process when unset (sessions then
# do not survive a restart).

import logging
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "data/sealvault.db"
DEFAULT_AUDIT_DIR = "audit_logs"


def _to_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _to_number(value: Optional[str], default, cast=int):
    if value is None or value.strip() == "":
        return default
    try:
        return cast(value)
    except ValueError:
        logger.warning("Ignoring invalid numeric setting %r", value)
        return default


@dataclass
class Settings:
    """Server and client settings.

    Attributes:
        db_path: SQLite file backing the server store.
        token_secret: HMAC key for bearer tokens.
        token_ttl_seconds: Bearer token lifetime.
        heartbeat_seconds: Longest gap between frames on a sync stream.
        autolock_seconds: Client inactivity timeout before keys are wiped.
        sync_max_reconnects: Reconnect attempts before the stream gives up.
        sync_base_delay: First reconnect delay in seconds.
        sync_max_delay: Reconnect delay cap in seconds.
        max_blob_bytes: Upload size limit for snapshot blobs.
        audit_dir: Directory for daily audit log files.
        dev_login: Accept any non-empty username/password at login.
    """

    db_path: Path = field(default_factory=lambda: Path(DEFAULT_DB_PATH))
    token_secret: bytes = field(default_factory=lambda: secrets.token_bytes(32))
    token_ttl_seconds: int = 86400
    heartbeat_seconds: float = 10.0
    autolock_seconds: float = 300.0
    sync_max_reconnects: int = 5
    sync_base_delay: float = 1.0
    sync_max_delay: float = 30.0
    max_blob_bytes: int = 10 * 1024 * 1024
    audit_dir: Path = field(default_factory=lambda: Path(DEFAULT_AUDIT_DIR))
    dev_login: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables (SEALVAULT_*)."""
        if environ is None:
            load_dotenv()
            environ = os.environ

        secret = environ.get("SEALVAULT_TOKEN_SECRET")
        if secret:
            token_secret = secret.encode("utf-8")
        else:
            logger.warning("SEALVAULT_TOKEN_SECRET not set; using an ephemeral secret")
            token_secret = secrets.token_bytes(32)

        return cls(
            db_path=Path(environ.get("SEALVAULT_DB_PATH", DEFAULT_DB_PATH)),
            token_secret=token_secret,
            token_ttl_seconds=_to_number(environ.get("SEALVAULT_TOKEN_TTL_SECONDS"), 86400),
            heartbeat_seconds=_to_number(environ.get("SEALVAULT_HEARTBEAT_SECONDS"), 10.0, float),
            autolock_seconds=_to_number(environ.get("SEALVAULT_AUTOLOCK_SECONDS"), 300.0, float),
            sync_max_reconnects=_to_number(environ.get("SEALVAULT_SYNC_MAX_RECONNECTS"), 5),
            sync_base_delay=_to_number(environ.get("SEALVAULT_SYNC_BASE_DELAY"), 1.0, float),
            sync_max_delay=_to_number(environ.get("SEALVAULT_SYNC_MAX_DELAY"), 30.0, float),
            max_blob_bytes=_to_number(environ.get("SEALVAULT_MAX_BLOB_BYTES"), 10 * 1024 * 1024),
            audit_dir=Path(environ.get("SEALVAULT_AUDIT_DIR", DEFAULT_AUDIT_DIR)),
            dev_login=_to_bool(environ.get("SEALVAULT_DEV_LOGIN")),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get global settings (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def set_settings(settings: Optional[Settings]) -> None:
    """Replace the global settings (tests, embedding)."""
    global _settings
    _settings = settings

"""
Shared pytest fixtures for the SealVault test suite.

Autouse fixtures below isolate tests from live data:
  - Audit logger  -> temp directory  (prevents test events in ./audit_logs)
  - Settings      -> fresh instance  (prevents .env / environment leakage)
"""

import pytest

from sealvault.config import Settings
from sealvault.crypto.kdf import Argon2idParams


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path):
    """Point the global AuditLogger at a temp directory for every test."""
    import sealvault.core.audit_log as audit_mod

    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = audit_mod.AuditLogger(tmp_path / "audit_logs")

    yield audit_mod._audit_logger

    audit_mod._audit_logger.close()
    audit_mod._audit_logger = old_logger


@pytest.fixture(autouse=True)
def _isolate_settings(tmp_path):
    """Give every test its own Settings so nothing reads the real environment."""
    import sealvault.config as config_mod

    old_settings = config_mod._settings
    config_mod._settings = Settings(
        db_path=tmp_path / "default.db",
        token_secret=b"test-secret",
        audit_dir=tmp_path / "audit_logs",
    )

    yield

    config_mod._settings = old_settings


@pytest.fixture
def audit_logger(_isolate_audit_logs):
    return _isolate_audit_logs


@pytest.fixture
def fast_kdf():
    """Argon2id params cheap enough for unit tests (never use in production)."""
    return Argon2idParams(iterations=1, memory_size=8, parallelism=1)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        db_path=tmp_path / "sealvault.db",
        token_secret=b"test-secret",
        heartbeat_seconds=0.05,
        autolock_seconds=0,
        audit_dir=tmp_path / "audit_logs",
        dev_login=True,
    )


@pytest.fixture
def store(settings):
    from sealvault.server.store import ServerStore

    return ServerStore(settings.db_path)


@pytest.fixture
def app(settings, store):
    from sealvault.api.main import create_app

    return create_app(settings=settings, store=store)

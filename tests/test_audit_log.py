# Tests for the audit trail and the admin command line
#
# Coverage:
#   - query_events filters: actor, time window, limit keeps the newest
#   - grant-admin / --revoke on a known user, refusal for an unknown one

from datetime import datetime, timedelta, timezone

import pytest

from sealvault.__main__ import main
from sealvault.core.audit_log import EventSeverity, EventType
from sealvault.server.store import ServerStore


def _log(audit_logger, user_id, message="Vault created"):
    return audit_logger.log_event(
        EventType.VAULT_CREATED,
        EventSeverity.INFO,
        message,
        user_context={"user_id": user_id, "session_id": "s"},
    )


class TestQueryEvents:

    def test_actor_filter(self, audit_logger):
        _log(audit_logger, "u-alice")
        _log(audit_logger, "u-bob")
        _log(audit_logger, "u-alice")

        mine = audit_logger.query_events(actor_user_id="u-alice")
        assert len(mine) == 2
        assert all(e["user_context"]["user_id"] == "u-alice" for e in mine)

    def test_time_window(self, audit_logger):
        _log(audit_logger, "u-alice")
        now = datetime.now(timezone.utc)

        assert len(audit_logger.query_events(start_time=now - timedelta(minutes=5))) == 1
        assert audit_logger.query_events(start_time=now + timedelta(minutes=5)) == []
        assert audit_logger.query_events(end_time=now - timedelta(minutes=5)) == []

    def test_limit_keeps_newest(self, audit_logger):
        for n in range(5):
            _log(audit_logger, "u-alice", message=f"event {n}")

        kept = audit_logger.query_events(limit=2)
        assert [e["message"] for e in kept] == ["event 3", "event 4"]


class TestGrantAdmin:

    def test_grant_and_revoke(self, tmp_path, audit_logger, capsys):
        db = tmp_path / "cli.db"
        alice = ServerStore(db).ensure_user("alice")

        main(["--db", str(db), "grant-admin", "alice"])
        assert ServerStore(db).is_admin(alice["id"])
        assert "admin=yes" in capsys.readouterr().out
        assert audit_logger.query_events(event_types=[EventType.ADMIN_GRANTED])

        main(["--db", str(db), "grant-admin", "alice", "--revoke"])
        assert not ServerStore(db).is_admin(alice["id"])

    def test_unknown_user(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--db", str(tmp_path / "cli.db"), "grant-admin", "nobody"])
        assert exc_info.value.code == 1

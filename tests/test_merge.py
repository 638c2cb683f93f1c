# Tests for the multi-vault merge engine
#
# Coverage:
#   - Deterministic ordering (personal -> shared -> team, then vault id)
#   - Idempotence and input-order independence
#   - Team copies supersede other copies regardless of timestamps
#   - Write routing by teamId

from datetime import datetime, timedelta, timezone

import pytest

from sealvault.exceptions import AuthorizationError, NotFoundError
from sealvault.models import Entry, Folder, Snapshot
from sealvault.vault.merge import MergeEngine, SourceKind, VaultSnapshotSource


def _source(vault_id, kind, entries=(), folders=(), team_id=None, writable=True):
    return VaultSnapshotSource(
        vault_id=vault_id,
        source=kind,
        snapshot=Snapshot(entries=list(entries), folders=list(folders)),
        team_id=team_id,
        writable=writable,
    )


@pytest.fixture
def engine():
    return MergeEngine()


class TestOrdering:

    def test_personal_then_shared_then_team(self, engine):
        sources = [
            _source("a-team", SourceKind.TEAM, team_id="t1"),
            _source("z-personal", SourceKind.PERSONAL),
            _source("m-shared", SourceKind.SHARED),
        ]
        assert [s.vault_id for s in engine.order(sources)] == ["z-personal", "m-shared", "a-team"]

    def test_ties_broken_by_vault_id(self, engine):
        sources = [
            _source("t2", SourceKind.TEAM, team_id="b"),
            _source("t1", SourceKind.TEAM, team_id="a"),
        ]
        assert [s.vault_id for s in engine.order(sources)] == ["t1", "t2"]


class TestCombine:

    def test_disjoint_vaults_union(self, engine):
        view = engine.combine([
            _source("p", SourceKind.PERSONAL, [Entry(id="e1", title="Mail")], [Folder(id="f1", name="Home")]),
            _source("t", SourceKind.TEAM, [Entry(id="e2", title="Deploy")], team_id="t1"),
        ])
        assert {e.id for e in view.entries} == {"e1", "e2"}
        assert view.entry_origin == {"e1": "p", "e2": "t"}
        assert view.folder_origin == {"f1": "p"}

    def test_idempotent(self, engine):
        sources = [
            _source("p", SourceKind.PERSONAL, [Entry(id="e1", title="A"), Entry(id="dup", title="P")]),
            _source("s", SourceKind.SHARED, [Entry(id="dup", title="S")]),
            _source("t", SourceKind.TEAM, [Entry(id="e3", title="T")], team_id="t1"),
        ]
        first = engine.combine(sources)
        second = engine.combine(sources)
        assert [e.model_dump() for e in first.entries] == [e.model_dump() for e in second.entries]
        assert first.entry_origin == second.entry_origin

    def test_input_order_does_not_matter(self, engine):
        sources = [
            _source("p", SourceKind.PERSONAL, [Entry(id="dup", title="P")]),
            _source("s", SourceKind.SHARED, [Entry(id="dup", title="S")]),
        ]
        forward = engine.combine(sources)
        backward = engine.combine(list(reversed(sources)))
        assert forward.get_entry("dup").title == backward.get_entry("dup").title == "P"

    def test_team_copy_supersedes_newer_personal_copy(self, engine):
        old = datetime(2020, 1, 1, tzinfo=timezone.utc)
        personal = Entry(id="e1", title="Personal", updated_at=old + timedelta(days=365))
        team = Entry(id="e1", title="Team", team_id="t1", updated_at=old)
        view = engine.combine([
            _source("p", SourceKind.PERSONAL, [personal]),
            _source("t", SourceKind.TEAM, [team], team_id="t1"),
        ])
        assert view.get_entry("e1").title == "Team"
        assert view.entry_origin["e1"] == "t"
        assert len(view.entries) == 1

    def test_team_copy_supersedes_shared_copy(self, engine):
        view = engine.combine([
            _source("s", SourceKind.SHARED, [Entry(id="e1", title="Shared")]),
            _source("t", SourceKind.TEAM, [Entry(id="e1", title="Team")], team_id="t1"),
        ])
        assert view.get_entry("e1").title == "Team"

    def test_team_source_stamps_team_id(self, engine):
        view = engine.combine([
            _source("t", SourceKind.TEAM, [Entry(id="e1", title="Legacy")], [Folder(id="f1", name="Ops")], team_id="t1"),
        ])
        assert view.get_entry("e1").team_id == "t1"
        assert view.get_folder("f1").team_id == "t1"

    def test_entries_for_team(self, engine):
        view = engine.combine([
            _source("p", SourceKind.PERSONAL, [Entry(id="e1", title="Mine")]),
            _source("t", SourceKind.TEAM, [Entry(id="e2", title="Ours")], team_id="t1"),
        ])
        assert [e.id for e in view.entries_for_team(None)] == ["e1"]
        assert [e.id for e in view.entries_for_team("t1")] == ["e2"]

    def test_empty_sources(self, engine):
        view = engine.combine([])
        assert view.entries == [] and view.folders == []


class TestRouteWrite:

    @pytest.fixture
    def sources(self):
        return [
            _source("p", SourceKind.PERSONAL),
            _source("t-rw", SourceKind.TEAM, team_id="t1"),
            _source("t-ro", SourceKind.TEAM, team_id="t2", writable=False),
            _source("s", SourceKind.SHARED),
        ]

    def test_no_team_routes_to_personal(self, sources):
        assert MergeEngine.route_write(None, sources).vault_id == "p"

    def test_team_routes_to_team_vault(self, sources):
        assert MergeEngine.route_write("t1", sources).vault_id == "t-rw"

    def test_read_only_team_rejected(self, sources):
        with pytest.raises(AuthorizationError) as exc_info:
            MergeEngine.route_write("t2", sources)
        assert exc_info.value.status_code == 403

    def test_unknown_team_rejected(self, sources):
        with pytest.raises(AuthorizationError):
            MergeEngine.route_write("nope", sources)

    def test_missing_personal_vault(self):
        with pytest.raises(NotFoundError):
            MergeEngine.route_write(None, [_source("t", SourceKind.TEAM, team_id="t1")])

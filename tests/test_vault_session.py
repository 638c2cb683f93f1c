# Tests for the client vault session against the real API app
#
# Each user gets a VaultServerClient whose httpx.AsyncClient is bound to the
# app through ASGITransport, so every call exercises routing, the store and
# the crypto end to end.
#
# Coverage:
#   - First-run identity setup, unlock with right and wrong passphrase
#   - Write routing: personal vs team vault, promotion shadowing, demotion
#   - Team membership: invite/accept, revocation drops the vault
#   - Key rotation re-encrypts the latest team contents; stale writers fail on flush
#   - Read-only shared vaults: deletes refused, edits fork to personal
#   - Corrupt snapshots skip only their vault; every upload failure is reported
#   - Inactivity auto-lock
#   - Sync event handling, including echoes that race pending uploads

import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace

import httpx
import pytest

from sealvault.client.transport import VaultServerClient
from sealvault.core.audit_log import EventType
from sealvault.exceptions import (
    AuthorizationError,
    CredentialError,
    KeyMismatchError,
    NotFoundError,
    SaveFailedError,
    SyncConnectionLost,
    TransportError,
)
from sealvault.sync.events import SyncEventKind, make_event
from sealvault.vault.session import LoadOutcome, VaultSession

PASSPHRASE = "CorrectHorse1"


class Harness:
    """Builds signed-in sessions bound to one app instance."""

    def __init__(self, app, settings, kdf):
        self.app = app
        self.settings = settings
        self.kdf = kdf
        self.http = []

    async def client(self, username):
        http = httpx.AsyncClient(transport=httpx.ASGITransport(app=self.app), base_url="http://test")
        self.http.append(http)
        client = VaultServerClient(client=http)
        await client.login(username, "pw")
        return client

    async def session(self, username, setup=False, unlock=False, autolock_seconds=0):
        session = VaultSession(
            await self.client(username),
            settings=self.settings,
            kdf_params=self.kdf,
            autolock_seconds=autolock_seconds,
        )
        if setup:
            await session.setup_identity(PASSPHRASE)
        elif unlock:
            await session.unlock(PASSPHRASE)
        return session

    async def aclose(self):
        for http in self.http:
            await http.aclose()


@pytest.fixture
def harness(app, settings, fast_kdf):
    return Harness(app, settings, fast_kdf)


def personal_vault(session):
    return next(v for v in session.vaults.values() if v.descriptor.source == "personal")


# ── Identity and unlock ─────────────────────────────────────────────


class TestUnlock:

    @pytest.mark.asyncio
    async def test_first_run_creates_personal_vault(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            assert alice.is_unlocked
            vault = personal_vault(alice)
            assert alice.outcomes[vault.id] == LoadOutcome.EMPTY
            assert alice.view.entries == []
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_unlock_before_setup(self, harness):
        try:
            alice = await harness.session("alice")
            with pytest.raises(NotFoundError):
                await alice.unlock(PASSPHRASE)
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_entries_survive_relock(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            entry = await alice.add_entry("Mail", "hunter2", username="alice@example.com")
            await alice.flush()
            alice.lock()
            assert not alice.is_unlocked
            assert alice.view.entries == []

            await alice.unlock(PASSPHRASE)
            loaded = alice.view.get_entry(entry.id)
            assert loaded.password == "hunter2"
            assert loaded.username == "alice@example.com"
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_wrong_passphrase(self, harness, audit_logger):
        try:
            await harness.session("alice", setup=True)
            other = await harness.session("alice")
            with pytest.raises(CredentialError):
                await other.unlock("wrong-pass")
            assert not other.is_unlocked
            failures = audit_logger.query_events(event_types=[EventType.VAULT_UNLOCK_FAILED])
            assert len(failures) == 1
        finally:
            await harness.aclose()


# ── Routing and merge ───────────────────────────────────────────────


class TestWriteRouting:

    @pytest.mark.asyncio
    async def test_team_and_personal_writes(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            created, team = await alice.shares.create_team("Ops")
            await alice.refresh()

            mine = await alice.add_entry("Bank", "p1")
            shared = await alice.add_entry("Deploy", "p2", team_id=team.team_id)
            await alice.flush()

            assert alice.view.entry_origin[mine.id] == personal_vault(alice).id
            assert alice.view.entry_origin[shared.id] == created["vault_id"]
            assert alice.vaults[created["vault_id"]].snapshot.find_entry(shared.id) is not None
            assert personal_vault(alice).snapshot.find_entry(shared.id) is None
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_promotion_shadows_personal_copy(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            created, team = await alice.shares.create_team("Ops")
            await alice.refresh()

            entry = await alice.add_entry("Router", "admin")
            await alice.update_entry(entry.id, team_id=team.team_id)
            await alice.flush()

            assert len(alice.view.entries) == 1
            assert alice.view.get_entry(entry.id).team_id == team.team_id
            assert alice.view.entry_origin[entry.id] == created["vault_id"]

            await alice.delete_entry(entry.id)
            await alice.flush()
            revealed = alice.view.get_entry(entry.id)
            assert revealed is not None and revealed.team_id is None
            assert alice.view.entry_origin[entry.id] == personal_vault(alice).id
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_moving_entry_out_of_team_drops_team_copy(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            created, team = await alice.shares.create_team("Ops")
            await alice.refresh()

            entry = await alice.add_entry("Router", "admin", team_id=team.team_id)
            await alice.update_entry(entry.id, team_id=None)
            await alice.flush()

            assert alice.view.get_entry(entry.id).team_id is None
            assert alice.view.entry_origin[entry.id] == personal_vault(alice).id
            assert alice.vaults[created["vault_id"]].snapshot.find_entry(entry.id) is None

            await alice.refresh()
            assert alice.view.get_entry(entry.id).team_id is None
            assert alice.view.entry_origin[entry.id] == personal_vault(alice).id
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_viewer_cannot_move_entry_out_of_team(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            bob = await harness.session("bob", setup=True)
            created, team = await alice.shares.create_team("Ops")
            await alice.refresh()
            entry = await alice.add_entry("Deploy", "pw", team_id=team.team_id)
            await alice.flush()
            await alice.shares.invite_member(team, bob.user_id, role="viewer")
            await bob.shares.accept_invite(team.team_id)
            await bob.refresh()

            with pytest.raises(AuthorizationError) as exc_info:
                await bob.update_entry(entry.id, team_id=None)
            assert exc_info.value.status_code == 403
            assert personal_vault(bob).snapshot.find_entry(entry.id) is None
            assert bob.view.entry_origin[entry.id] == created["vault_id"]
            assert bob.pending_saves == 0
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_unknown_team_refused(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            with pytest.raises(AuthorizationError):
                await alice.add_entry("x", "y", team_id="no-such-team")
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            entry = await alice.add_entry("x", "y")
            with pytest.raises(ValueError):
                await alice.update_entry(entry.id, colour="red")
            await alice.flush()
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_folders_and_favorites(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            folder = await alice.add_folder("Work", icon="briefcase")
            entry = await alice.add_entry("VPN", "pw", folder_id=folder.id)
            toggled = await alice.toggle_favorite(entry.id)
            assert toggled.favorite
            await alice.delete_folder(folder.id)
            await alice.flush()

            assert alice.view.get_folder(folder.id) is None
            assert alice.view.get_entry(entry.id).favorite
        finally:
            await harness.aclose()


# ── Teams, revocation and rotation ──────────────────────────────────


class TestTeamMembership:

    @pytest.mark.asyncio
    async def test_revoked_member_loses_team_vault(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            bob = await harness.session("bob", setup=True)
            created, team = await alice.shares.create_team("Ops")
            await alice.refresh()
            entry = await alice.add_entry("Deploy key", "s3cret", team_id=team.team_id)
            await alice.flush()

            member = await alice.shares.invite_member(team, bob.user_id, role="editor")
            await bob.shares.accept_invite(team.team_id)
            await bob.refresh()
            assert bob.view.get_entry(entry.id).password == "s3cret"
            assert bob.outcomes[created["vault_id"]] == LoadOutcome.LOADED

            await alice.remove_team_member(team.team_id, member["member_id"])
            # Already-decrypted entries stay until the next fetch
            assert bob.view.get_entry(entry.id) is not None

            await bob.refresh()
            assert created["vault_id"] not in bob.vaults
            assert bob.view.get_entry(entry.id) is None
            with pytest.raises(NotFoundError):
                await bob.client.fetch_latest_blob(created["vault_id"])

            # The rotated vault is still readable by the remaining owner
            assert alice.vaults[created["vault_id"]].epoch == 2
            assert alice.view.get_entry(entry.id).password == "s3cret"
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_viewer_cannot_write_team_vault(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            bob = await harness.session("bob", setup=True)
            _, team = await alice.shares.create_team("Ops")
            await alice.shares.invite_member(team, bob.user_id, role="viewer")
            await bob.shares.accept_invite(team.team_id)
            await bob.refresh()

            with pytest.raises(AuthorizationError):
                await bob.add_entry("x", "y", team_id=team.team_id)
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_stale_epoch_write_fails_on_flush(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            created, team = await alice.shares.create_team("Ops")
            await alice.refresh()
            laptop = await harness.session("alice", unlock=True)
            assert laptop.vaults[created["vault_id"]].epoch == 1

            await alice.rotate_team_key(team.team_id)
            await laptop.add_entry("Late", "write", team_id=team.team_id)
            with pytest.raises(SaveFailedError) as exc_info:
                await laptop.flush()
            assert isinstance(exc_info.value.failures[created["vault_id"]][0], KeyMismatchError)

            await laptop.refresh()
            assert laptop.vaults[created["vault_id"]].epoch == 2
            await laptop.add_entry("Retry", "write", team_id=team.team_id)
            await laptop.flush()
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_rotation_keeps_writes_from_other_devices(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            created, team = await alice.shares.create_team("Ops")
            await alice.refresh()
            laptop = await harness.session("alice", unlock=True)

            late = await laptop.add_entry("FromLaptop", "pw", team_id=team.team_id)
            await laptop.flush()
            # alice's local copy of the team vault is still empty here
            assert alice.vaults[created["vault_id"]].snapshot.find_entry(late.id) is None

            await alice.rotate_team_key(team.team_id)
            assert alice.vaults[created["vault_id"]].epoch == 2
            assert alice.view.get_entry(late.id).title == "FromLaptop"

            await laptop.refresh()
            assert laptop.outcomes[created["vault_id"]] == LoadOutcome.LOADED
            assert laptop.view.get_entry(late.id) is not None
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_direct_rotation_reencrypts_latest_snapshot(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            created, team = await alice.shares.create_team("Ops")
            await alice.refresh()
            entry = await alice.add_entry("Deploy", "pw", team_id=team.team_id)
            await alice.flush()

            new_key = await alice.shares.rotate_team_key(alice.team_key(team.team_id))
            assert new_key.epoch == 2

            await alice.refresh()
            assert alice.outcomes[created["vault_id"]] == LoadOutcome.LOADED
            assert alice.view.get_entry(entry.id).password == "pw"
        finally:
            await harness.aclose()


# ── Shares ──────────────────────────────────────────────────────────


class TestSharedVaults:

    @pytest.mark.asyncio
    async def test_read_only_share(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            bob = await harness.session("bob", setup=True)
            entry = await alice.add_entry("Wifi", "letmein")
            await alice.flush()
            vault = personal_vault(alice)
            await alice.shares.share_with_user(vault.id, vault.key, bob.user_id, permissions="read")

            await bob.refresh()
            assert bob.view.entry_origin[entry.id] == vault.id

            with pytest.raises(AuthorizationError) as exc_info:
                await bob.delete_entry(entry.id)
            assert exc_info.value.status_code == 403

            # Edits fork into bob's own vault and shadow the shared copy
            await bob.update_entry(entry.id, title="Home wifi")
            await bob.flush()
            assert bob.view.entry_origin[entry.id] == personal_vault(bob).id
            assert bob.view.get_entry(entry.id).title == "Home wifi"

            await alice.refresh()
            assert alice.view.get_entry(entry.id).title == "Wifi"
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_share_with_team_reaches_members(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            bob = await harness.session("bob", setup=True)
            _, team = await alice.shares.create_team("Ops")
            await alice.shares.invite_member(team, bob.user_id, role="viewer")
            await bob.shares.accept_invite(team.team_id)

            entry = await alice.add_entry("Printer", "1234")
            await alice.flush()
            vault = personal_vault(alice)
            await alice.shares.share_with_team(vault.id, vault.key, team.team_id)

            await bob.refresh()
            assert bob.outcomes[vault.id] == LoadOutcome.LOADED
            assert bob.view.get_entry(entry.id).password == "1234"
        finally:
            await harness.aclose()


# ── Failure isolation ───────────────────────────────────────────────


class TestFailureIsolation:

    @pytest.mark.asyncio
    async def test_corrupt_vault_is_skipped(self, harness, audit_logger):
        try:
            alice = await harness.session("alice", setup=True)
            created, team = await alice.shares.create_team("Ops")
            await alice.refresh()
            mine = await alice.add_entry("Bank", "p1")
            await alice.flush()

            await alice.client.upload_blob(created["vault_id"], b"not a snapshot at all", 1)
            await alice.refresh()

            assert alice.outcomes[created["vault_id"]] == LoadOutcome.CORRUPT
            assert created["vault_id"] not in alice.vaults
            assert alice.view.get_entry(mine.id) is not None
            assert audit_logger.query_events(event_types=[EventType.SNAPSHOT_CORRUPT])
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_later_upload_success_keeps_earlier_failure(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            upload = alice.client.upload_blob
            calls = []

            async def flaky_upload(*args, **kwargs):
                calls.append(args)
                if len(calls) == 1:
                    raise TransportError("connection reset")
                return await upload(*args, **kwargs)

            alice.client.upload_blob = flaky_upload
            await alice.add_entry("First", "pw")
            await alice.add_entry("Second", "pw")

            with pytest.raises(SaveFailedError) as exc_info:
                await alice.flush()
            [failure] = exc_info.value.failures[personal_vault(alice).id]
            assert isinstance(failure, TransportError)
            assert len(calls) == 2

            # Reported once; the next flush starts clean
            await alice.flush()
        finally:
            await harness.aclose()


# ── Auto-lock ───────────────────────────────────────────────────────


class TestAutoLock:

    @pytest.mark.asyncio
    async def test_locks_after_inactivity(self, harness):
        try:
            alice = await harness.session("alice", setup=True, autolock_seconds=0.05)
            assert alice.timer.active
            await asyncio.sleep(0.2)
            assert not alice.is_unlocked
            assert alice.vaults == {}
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_disabled_timer(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            assert not alice.timer.active
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_manual_lock_cancels_timer(self, harness):
        try:
            alice = await harness.session("alice", setup=True, autolock_seconds=30)
            alice.lock()
            assert not alice.timer.active
        finally:
            await harness.aclose()


# ── Sync events ─────────────────────────────────────────────────────


class TestSyncHandling:

    @pytest.mark.asyncio
    async def test_blob_upload_reloads_vault(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            laptop = await harness.session("alice", unlock=True)
            entry = await alice.add_entry("New", "pw")
            await alice.flush()

            vault_id = personal_vault(alice).id
            await laptop.handle_sync_event(
                make_event(SyncEventKind.BLOB_UPLOAD, actor_user_id=alice.user_id, vault_id=vault_id)
            )
            assert laptop.view.get_entry(entry.id) is not None
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_member_removal_refreshes(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            bob = await harness.session("bob", setup=True)
            created, team = await alice.shares.create_team("Ops")
            member = await alice.shares.invite_member(team, bob.user_id, role="viewer")
            await bob.shares.accept_invite(team.team_id)
            await bob.refresh()
            assert created["vault_id"] in bob.vaults

            await alice.shares.remove_member(team, member["member_id"])
            await bob.handle_sync_event(
                make_event(
                    SyncEventKind.TEAM_MEMBER_REMOVE,
                    actor_user_id=alice.user_id,
                    team_id=team.team_id,
                    member_id=member["member_id"],
                )
            )
            assert created["vault_id"] not in bob.vaults
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_own_key_reset_locks(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            await alice.handle_sync_event(make_event(SyncEventKind.KEYS_RESET, actor_user_id=alice.user_id))
            assert not alice.is_unlocked
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_echo_during_pending_upload_keeps_local_edits(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            await alice.add_entry("A", "pw")
            await alice.flush()
            vault_id = personal_vault(alice).id

            gate = asyncio.Event()
            upload = alice.client.upload_blob

            async def gated_upload(*args, **kwargs):
                await gate.wait()
                return await upload(*args, **kwargs)

            alice.client.upload_blob = gated_upload
            await alice.add_entry("B", "pw")
            echo = asyncio.create_task(
                alice.handle_sync_event(
                    make_event(SyncEventKind.BLOB_UPLOAD, actor_user_id=alice.user_id, vault_id=vault_id)
                )
            )
            await asyncio.sleep(0.01)
            await alice.add_entry("C", "pw")
            gate.set()
            await echo
            await alice.flush()

            assert sorted(e.title for e in alice.view.entries) == ["A", "B", "C"]
            await alice.refresh()
            assert sorted(e.title for e in alice.view.entries) == ["A", "B", "C"]
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_refresh_waits_for_pending_uploads(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            gate = asyncio.Event()
            upload = alice.client.upload_blob

            async def gated_upload(*args, **kwargs):
                await gate.wait()
                return await upload(*args, **kwargs)

            alice.client.upload_blob = gated_upload
            entry = await alice.add_entry("Pending", "pw")
            refresh = asyncio.create_task(alice.refresh())
            await asyncio.sleep(0.01)
            assert not refresh.done()

            gate.set()
            await refresh
            assert alice.view.get_entry(entry.id) is not None
            await alice.flush()
        finally:
            await harness.aclose()

    @pytest.mark.asyncio
    async def test_start_sync_dispatches_stream_events(self, harness):
        try:
            alice = await harness.session("alice", setup=True)
            laptop = await harness.session("alice", unlock=True)
            entry = await alice.add_entry("New", "pw")
            await alice.flush()
            vault_id = personal_vault(alice).id

            @asynccontextmanager
            async def opener():
                async def frames():
                    yield {"t": 1, "type": "heartbeat"}
                    yield make_event(
                        SyncEventKind.BLOB_UPLOAD, actor_user_id=alice.user_id, vault_id=vault_id
                    ).to_wire()

                yield frames()

            laptop.client.open_event_stream = opener
            laptop.settings = replace(harness.settings, sync_max_reconnects=0)
            task = laptop.start_sync()
            with pytest.raises(SyncConnectionLost):
                await task

            assert laptop.view.get_entry(entry.id) is not None
            assert laptop.sync_stream.last_heartbeat_ms == 1
        finally:
            await harness.aclose()

# SealVault - Client Vault Session
#
# Ties the key hierarchy, snapshot codec and merge engine together for one
# signed-in user:
#
#   unlock -> derive master key -> open identity -> unwrap each vault key
#          -> decrypt each latest snapshot -> merge -> editable view
#
# Each mutation is routed to exactly one owning vault, applied locally,
# re-encrypted and uploaded in the background. Upload failures are never
# retried automatically; flush() surfaces every one of them.
#
# Reloads wait for pending uploads first, and never replace a vault that
# was edited locally while its reload was in flight.
#
# Locking wipes key material immediately and never waits for in-flight
# uploads, which finish or fail on their own.

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from ..config import Settings, get_settings
from ..core.audit_log import EventSeverity, EventType, log_security_event
from ..crypto.box import generate_vault_key, team_keypair, unwrap_vault_key, wrap_vault_key
from ..crypto.identity import (
    IdentityKeyStore,
    UnlockedIdentity,
    build_registration,
    encrypt_private_keys,
    generate_identity,
)
from ..crypto.kdf import DEFAULT_PARAMS, Argon2idParams
from ..crypto.snapshot import decrypt_snapshot, encrypt_snapshot, vault_associated_data
from ..exceptions import (
    AuthorizationError,
    KeyMismatchError,
    NotFoundError,
    SaveFailedError,
    SnapshotCorruptError,
    UnsupportedVersionError,
)
from ..models import Entry, Folder, Snapshot, VaultDescriptor, utc_now
from ..sync.client import SyncEventStream
from ..sync.events import SyncEvent, SyncEventKind
from .merge import MergedView, MergeEngine, SourceKind, VaultSnapshotSource
from .share import ShareProtocol, TeamKey

logger = logging.getLogger(__name__)

ENTRY_FIELDS = frozenset({"title", "username", "password", "url", "notes", "folder_id", "team_id", "favorite"})

_VAULT_EVENTS = {SyncEventKind.BLOB_UPLOAD, SyncEventKind.VAULT_CREATE, SyncEventKind.VAULT_SHARE}


class LoadOutcome(str, Enum):
    LOADED = "loaded"
    EMPTY = "empty"
    CORRUPT = "corrupt"
    UNSUPPORTED = "unsupported"
    KEY_MISMATCH = "key_mismatch"


@dataclass
class LoadedVault:
    """A vault whose key is unwrapped and whose snapshot is decrypted."""
    descriptor: VaultDescriptor
    key: bytes
    snapshot: Snapshot

    @property
    def id(self) -> str:
        return self.descriptor.id

    @property
    def epoch(self) -> int:
        return self.descriptor.key_epoch

    def as_source(self) -> VaultSnapshotSource:
        return VaultSnapshotSource(
            vault_id=self.descriptor.id,
            source=SourceKind(self.descriptor.source),
            snapshot=self.snapshot,
            team_id=self.descriptor.team_id if self.descriptor.source == "team" else None,
            writable=self.descriptor.writable,
        )

    def __repr__(self) -> str:
        return f"LoadedVault(id={self.id!r}, source={self.descriptor.source!r}, epoch={self.epoch})"


class AutoLockTimer:
    """Single cancellable inactivity timer.

    reset() replaces any pending countdown, so there is never more than one
    timer task per session.
    """

    def __init__(self, timeout: float, on_expire: Callable[[], Union[None, Awaitable[None]]]):
        self.timeout = timeout
        self._on_expire = on_expire
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def reset(self) -> None:
        self.cancel()
        if self.timeout and self.timeout > 0:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        await asyncio.sleep(self.timeout)
        logger.info("Inactivity timeout reached; locking")
        result = self._on_expire()
        if asyncio.iscoroutine(result):
            await result


class VaultSession:
    """The unlocked, merged, editable state for one user.

    Args:
        client: VaultServerClient with a signed-in token.
        settings: Supplies the auto-lock timeout.
        kdf_params: Argon2id parameters for new identity bundles.
    """

    def __init__(
        self,
        client,
        settings: Optional[Settings] = None,
        kdf_params: Argon2idParams = DEFAULT_PARAMS,
        autolock_seconds: Optional[float] = None,
    ):
        settings = settings or get_settings()
        self.settings = settings
        self.client = client
        self.kdf_params = kdf_params
        self.keys = IdentityKeyStore()
        self.shares = ShareProtocol(client, self.keys)
        self.merge = MergeEngine()
        self.user_id: Optional[str] = None
        self.vaults: Dict[str, LoadedVault] = {}
        self.outcomes: Dict[str, LoadOutcome] = {}
        self.view = MergedView()
        self.timer = AutoLockTimer(
            autolock_seconds if autolock_seconds is not None else settings.autolock_seconds,
            self.lock,
        )
        self._saves: Set[asyncio.Task] = set()
        self._save_tails: Dict[str, asyncio.Task] = {}
        self._save_failures: Dict[str, List[BaseException]] = {}
        self._generation: Dict[str, int] = {}
        self.sync_stream: Optional[SyncEventStream] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_unlocked(self) -> bool:
        return self.keys.is_unlocked

    def _require_unlocked(self) -> UnlockedIdentity:
        return self.keys.identity

    async def setup_identity(self, password: str) -> UnlockedIdentity:
        """Generate, protect and register a brand-new identity, then unlock."""
        identity = generate_identity()
        bundle = await asyncio.to_thread(encrypt_private_keys, password, identity, self.kdf_params)
        await self.client.register_keys(build_registration(identity, bundle))
        self.keys.adopt(identity)
        await self._after_unlock()
        return identity

    async def unlock(self, password: str) -> None:
        """
        Open the identity and load every accessible vault.

        Raises:
            NotFoundError: No identity registered yet (call setup_identity).
            CredentialError: Wrong passphrase or damaged bundle.
        """
        keys = await self.client.get_my_keys()
        if keys is None:
            raise NotFoundError("no identity registered")
        try:
            await self.keys.unlock(password, keys["encrypted_private_key"])
        except Exception:
            log_security_event(
                EventType.VAULT_UNLOCK_FAILED,
                EventSeverity.INVESTIGATE,
                "Unlock failed",
                details={"user_id": self.user_id},
            )
            raise
        await self._after_unlock()

    async def _after_unlock(self) -> None:
        me = await self.client.me()
        self.user_id = me["id"]
        await self.refresh()
        self.timer.reset()
        log_security_event(
            EventType.VAULT_UNLOCKED,
            EventSeverity.INFO,
            "Vault session unlocked",
            details={"user_id": self.user_id, "vaults": len(self.vaults)},
        )

    def lock(self) -> None:
        """Drop all key material and decrypted state. Uploads are not awaited."""
        was_unlocked = self.keys.is_unlocked
        self.keys.lock()
        self.vaults = {}
        self.outcomes = {}
        self.view = MergedView()
        self.timer.cancel()
        if was_unlocked:
            log_security_event(
                EventType.VAULT_LOCKED,
                EventSeverity.INFO,
                "Vault session locked",
                details={"user_id": self.user_id},
            )

    def touch(self) -> None:
        """Record user activity; restarts the inactivity countdown."""
        if self.is_unlocked:
            self.timer.reset()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def _ensure_personal_vault(self, descriptors: List[VaultDescriptor]) -> List[VaultDescriptor]:
        if any(d.source == "personal" for d in descriptors):
            return descriptors
        identity = self._require_unlocked()
        created = await self.client.create_vault(wrap_vault_key(identity.enc_public, generate_vault_key()))
        logger.info("Created personal vault %s", created["id"])
        return await self.client.list_vaults()

    def _unwrap(self, descriptor: VaultDescriptor, team_keys: Dict[str, bytes]) -> bytes:
        if descriptor.wrap_epoch != descriptor.key_epoch:
            raise KeyMismatchError(
                f"wrapped key is for epoch {descriptor.wrap_epoch}, vault is at {descriptor.key_epoch}",
                vault_id=descriptor.id,
            )
        if descriptor.wrapped_for == "team":
            team_key = team_keys.get(descriptor.via_team_id)
            if team_key is None:
                raise KeyMismatchError("team key not available", vault_id=descriptor.id)
            pair = team_keypair(team_key)
            return unwrap_vault_key(pair.public_bytes, pair.private_bytes, descriptor.wrapped_key)
        identity = self._require_unlocked()
        return unwrap_vault_key(identity.enc_public, identity.enc_secret, descriptor.wrapped_key)

    async def _load_vault(
        self,
        descriptor: VaultDescriptor,
        team_keys: Dict[str, bytes],
        retry: bool = True,
    ) -> Tuple[LoadOutcome, Optional[LoadedVault]]:
        """Load one vault. Failures affect only this vault."""
        try:
            key = self._unwrap(descriptor, team_keys)
        except KeyMismatchError:
            if retry:
                logger.info("Key mismatch on vault %s; refetching once", descriptor.id)
                try:
                    fresh = await self.client.get_vault(descriptor.id)
                except NotFoundError:
                    return LoadOutcome.KEY_MISMATCH, None
                return await self._load_vault(fresh, team_keys, retry=False)
            log_security_event(
                EventType.KEY_MISMATCH,
                EventSeverity.INVESTIGATE,
                "Vault key could not be unwrapped",
                details={"vault_id": descriptor.id, "key_epoch": descriptor.key_epoch},
            )
            return LoadOutcome.KEY_MISMATCH, None

        blob = await self.client.fetch_latest_blob(descriptor.id)
        if blob is None:
            log_security_event(
                EventType.SNAPSHOT_EMPTY,
                EventSeverity.INFO,
                "Vault has no snapshot yet",
                details={"vault_id": descriptor.id},
            )
            return LoadOutcome.EMPTY, LoadedVault(descriptor, key, Snapshot())

        try:
            snapshot = await asyncio.to_thread(
                decrypt_snapshot, key, blob, vault_associated_data(descriptor.id, descriptor.key_epoch)
            )
        except UnsupportedVersionError as exc:
            logger.warning("Vault %s written by a newer client: %s", descriptor.id, exc)
            return LoadOutcome.UNSUPPORTED, None
        except SnapshotCorruptError as exc:
            log_security_event(
                EventType.SNAPSHOT_CORRUPT,
                EventSeverity.ALERT,
                "Snapshot failed authentication; vault skipped",
                details={"vault_id": descriptor.id, "reason": str(exc)},
            )
            return LoadOutcome.CORRUPT, None
        return LoadOutcome.LOADED, LoadedVault(descriptor, key, snapshot)

    async def _load_all(
        self, descriptors: List[VaultDescriptor]
    ) -> Tuple[Dict[str, LoadedVault], Dict[str, LoadOutcome]]:
        # Keys sealed to a team keypair need that team's key first.
        direct = [d for d in descriptors if d.wrapped_for == "user"]
        via_team = [d for d in descriptors if d.wrapped_for == "team"]

        vaults: Dict[str, LoadedVault] = {}
        outcomes: Dict[str, LoadOutcome] = {}
        for batch in (direct, via_team):
            team_keys = {v.descriptor.team_id: v.key for v in vaults.values() if v.descriptor.source == "team"}
            results = await asyncio.gather(*(self._load_vault(d, team_keys) for d in batch))
            for descriptor, (outcome, loaded) in zip(batch, results):
                outcomes[descriptor.id] = outcome
                if loaded is not None:
                    vaults[descriptor.id] = loaded
        return vaults, outcomes

    async def _settle(self, vault_id: Optional[str] = None) -> None:
        """Wait for pending uploads (of one vault, or all) without raising."""
        while True:
            if vault_id is None:
                pending = {t for t in self._saves if not t.done()}
            else:
                tail = self._save_tails.get(vault_id)
                pending = {tail} if tail is not None and not tail.done() else set()
            if not pending:
                return
            await asyncio.wait(pending)

    def _edited_since(self, vault_id: str, generation: int) -> bool:
        return self._generation.get(vault_id, 0) != generation

    async def refresh(self) -> MergedView:
        """Re-list accessible vaults from the server and reload all of them.

        Vaults no longer listed (revoked membership or grant) disappear
        from the view. A vault edited locally during the reload keeps its
        local snapshot as long as its key epoch is unchanged.
        """
        self._require_unlocked()
        await self._settle()
        generations = dict(self._generation)
        descriptors = await self._ensure_personal_vault(await self.client.list_vaults())
        vaults, outcomes = await self._load_all(descriptors)
        if not self.is_unlocked:
            return self.view

        for vault_id, local in self.vaults.items():
            fresh = vaults.get(vault_id)
            if fresh is None or not self._edited_since(vault_id, generations.get(vault_id, 0)):
                continue
            if fresh.epoch == local.epoch:
                logger.debug("Vault %s edited during refresh; keeping local snapshot", vault_id)
                vaults[vault_id] = local
                outcomes[vault_id] = LoadOutcome.LOADED

        self.vaults = vaults
        self.outcomes = outcomes
        self._recompute()
        return self.view

    async def reload_vault(self, vault_id: str) -> LoadOutcome:
        """Re-pull and re-decrypt one vault after a change notification."""
        self._require_unlocked()
        await self._settle(vault_id)
        generation = self._generation.get(vault_id, 0)
        try:
            descriptor = await self.client.get_vault(vault_id)
        except NotFoundError:
            self.vaults.pop(vault_id, None)
            self.outcomes.pop(vault_id, None)
            self._recompute()
            raise
        team_keys = {v.descriptor.team_id: v.key for v in self.vaults.values() if v.descriptor.source == "team"}
        outcome, loaded = await self._load_vault(descriptor, team_keys)
        if not self.is_unlocked:
            return outcome

        local = self.vaults.get(vault_id)
        if (
            local is not None
            and self._edited_since(vault_id, generation)
            and (loaded is None or loaded.epoch == local.epoch)
        ):
            # The pending upload of the local edit supersedes what was fetched.
            logger.debug("Vault %s edited during reload; keeping local snapshot", vault_id)
            return self.outcomes.get(vault_id, LoadOutcome.LOADED)

        self.outcomes[vault_id] = outcome
        if loaded is not None:
            self.vaults[vault_id] = loaded
        else:
            self.vaults.pop(vault_id, None)
        self._recompute()
        return outcome

    def _recompute(self) -> None:
        self.view = self.merge.combine(v.as_source() for v in self.vaults.values())

    def _sources(self) -> List[VaultSnapshotSource]:
        return [v.as_source() for v in self.vaults.values()]

    def team_key(self, team_id: str) -> TeamKey:
        """Key handle for a loaded team vault (for ShareProtocol calls)."""
        for vault in self.vaults.values():
            if vault.descriptor.source == "team" and vault.descriptor.team_id == team_id:
                return TeamKey(team_id=team_id, vault_id=vault.id, key=vault.key, epoch=vault.epoch)
        raise NotFoundError(f"team vault for {team_id} is not loaded")

    async def rotate_team_key(self, team_id: str) -> TeamKey:
        """
        Rotate a team key, re-encrypting the team vault's latest contents.

        Pending uploads are flushed first so none of them lands under the
        superseded epoch. The snapshot re-encrypted is the one on the server,
        so writes by other members are carried over.

        Raises:
            ConflictError: The team vault changed during the rotation.
        """
        await self.flush()
        team = self.team_key(team_id)
        new_key = await self.shares.rotate_team_key(team)
        await self.refresh()
        return new_key

    async def remove_team_member(self, team_id: str, member_id: str, rotate: bool = True) -> None:
        """Revoke a membership; with rotate, also replace the team key."""
        team = self.team_key(team_id)
        await self.shares.remove_member(team, member_id)
        if rotate:
            await self.rotate_team_key(team_id)
        else:
            await self.refresh()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _target(self, team_id: Optional[str]) -> LoadedVault:
        self._require_unlocked()
        route = MergeEngine.route_write(team_id, self._sources())
        return self.vaults[route.vault_id]

    def _apply(self, vault: LoadedVault, snapshot: Snapshot) -> None:
        vault.snapshot = snapshot
        self._generation[vault.id] = self._generation.get(vault.id, 0) + 1
        self._recompute()
        self._schedule_save(vault)

    async def add_entry(
        self,
        title: str,
        password: str,
        username: str = "",
        url: Optional[str] = None,
        notes: Optional[str] = None,
        folder_id: Optional[str] = None,
        team_id: Optional[str] = None,
        favorite: bool = False,
    ) -> Entry:
        self.touch()
        target = self._target(team_id)
        entry = Entry(
            title=title,
            username=username,
            password=password,
            url=url,
            notes=notes,
            folder_id=folder_id,
            team_id=team_id,
            favorite=favorite,
            created_by=self.user_id,
        )
        self._apply(target, target.snapshot.upsert_entry(entry))
        return entry

    async def update_entry(self, entry_id: str, **changes: Any) -> Entry:
        """
        Change fields of an entry.

        The write goes to the vault named by the resulting teamId, so
        moving an entry into a team writes a team copy that supersedes the
        personal one in the merged view. Moving an entry out of a team
        removes the team copy, which would otherwise keep shadowing it.

        Raises:
            AuthorizationError: The entry leaves a team vault the caller
                cannot write (403).
        """
        self.touch()
        unknown = set(changes) - ENTRY_FIELDS
        if unknown:
            raise ValueError(f"unknown entry fields: {sorted(unknown)}")
        current = self.view.get_entry(entry_id)
        if current is None:
            raise NotFoundError(f"entry {entry_id} not found")

        target = self._target(changes.get("team_id", current.team_id))
        origin = self.vaults.get(self.view.entry_origin.get(entry_id))
        leaving = origin is not None and origin is not target and origin.descriptor.source == "team"
        if leaving and not origin.descriptor.writable:
            raise AuthorizationError("entry belongs to a read-only team vault", status_code=403)

        updated = Entry.model_validate(
            {**current.model_dump(), **changes, "updated_at": utc_now()}
        )
        if leaving:
            self._apply(origin, origin.snapshot.remove_entry(entry_id))
        self._apply(target, target.snapshot.upsert_entry(updated))
        return updated

    async def toggle_favorite(self, entry_id: str) -> Entry:
        current = self.view.get_entry(entry_id)
        if current is None:
            raise NotFoundError(f"entry {entry_id} not found")
        return await self.update_entry(entry_id, favorite=not current.favorite)

    async def delete_entry(self, entry_id: str) -> None:
        """Remove an entry from its owning vault.

        A copy of the same id in another vault (e.g. the personal original
        of a promoted entry) becomes visible again.
        """
        self.touch()
        current = self.view.get_entry(entry_id)
        if current is None:
            raise NotFoundError(f"entry {entry_id} not found")
        target = self._target(current.team_id)
        if target.snapshot.find_entry(entry_id) is None:
            raise AuthorizationError("entry belongs to a read-only vault", status_code=403)
        self._apply(target, target.snapshot.remove_entry(entry_id))

    async def add_folder(
        self,
        name: str,
        icon: Optional[str] = None,
        parent_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> Folder:
        self.touch()
        target = self._target(team_id)
        now = utc_now()
        folder = Folder(name=name, icon=icon, parent_id=parent_id, team_id=team_id, created_at=now, updated_at=now)
        self._apply(target, target.snapshot.upsert_folder(folder))
        return folder

    async def delete_folder(self, folder_id: str) -> None:
        self.touch()
        folder = self.view.get_folder(folder_id)
        if folder is None:
            raise NotFoundError(f"folder {folder_id} not found")
        target = self._target(folder.team_id)
        if not any(f.id == folder_id for f in target.snapshot.folders):
            raise AuthorizationError("folder belongs to a read-only vault", status_code=403)
        self._apply(target, target.snapshot.remove_folder(folder_id))

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    @property
    def pending_saves(self) -> int:
        return sum(1 for task in self._saves if not task.done())

    def _schedule_save(self, vault: LoadedVault) -> None:
        previous = self._save_tails.get(vault.id)
        task = asyncio.create_task(self._save(vault.id, vault.key, vault.epoch, vault.snapshot, previous))
        self._saves.add(task)
        self._save_tails[vault.id] = task
        task.add_done_callback(self._saves.discard)

    async def _save(
        self,
        vault_id: str,
        key: bytes,
        epoch: int,
        snapshot: Snapshot,
        previous: Optional[asyncio.Task],
    ) -> None:
        # Uploads to one vault go out in mutation order.
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        try:
            blob = encrypt_snapshot(key, snapshot, vault_associated_data(vault_id, epoch))
            await self.client.upload_blob(vault_id, blob, epoch)
        except Exception as exc:
            logger.error("Snapshot upload for vault %s failed: %s", vault_id, exc)
            self._save_failures.setdefault(vault_id, []).append(exc)

    async def flush(self) -> None:
        """
        Wait for every scheduled upload.

        Raises:
            SaveFailedError: One or more uploads failed since the last flush
                (vault id -> list of errors, oldest first). A later upload
                succeeding does not clear an earlier failure.
        """
        while True:
            pending = [t for t in self._saves if not t.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        failures, self._save_failures = self._save_failures, {}
        if failures:
            raise SaveFailedError(failures)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def handle_sync_event(self, event: SyncEvent) -> None:
        """Re-pull whatever a change notification touched."""
        if not self.is_unlocked or event.is_heartbeat:
            return
        if event.type == SyncEventKind.KEYS_RESET and event.actor_user_id == self.user_id:
            logger.warning("Identity was reset elsewhere; locking")
            self.lock()
            return
        if event.type in _VAULT_EVENTS and event.vault_id in self.vaults:
            try:
                await self.reload_vault(event.vault_id)
            except NotFoundError:
                logger.info("Vault %s is no longer accessible", event.vault_id)
            return
        await self.refresh()

    def start_sync(self, **kwargs: Any) -> asyncio.Task:
        """Follow the server event stream in the background.

        Reconnect policy comes from the session settings; kwargs are passed
        through to SyncEventStream (e.g. on_state_change). The stream is kept
        on sync_stream; errors surface through the returned task.
        """
        self.sync_stream = SyncEventStream.from_settings(self.client.open_event_stream, self.settings, **kwargs)
        return self.sync_stream.start(self.handle_sync_event)

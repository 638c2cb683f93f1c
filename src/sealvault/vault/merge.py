# SealVault - Multi-Vault Merge
#
# Combines the decrypted snapshots of every vault a user can reach into one
# logical view, and routes each local write back to exactly one vault.
#
# Precedence:
#   1. Sources are ordered personal -> shared -> team, then by vault id.
#   2. For each item id the first-seen copy is kept...
#   3. ...unless a later team-sourced copy shares the id; the team copy
#      supersedes it (team attribution is canonical once shared).
# Timestamps never take part in precedence.

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, TypeVar

from ..exceptions import AuthorizationError, NotFoundError
from ..models import Entry, Folder, Snapshot

logger = logging.getLogger(__name__)

Item = TypeVar("Item", Entry, Folder)


class SourceKind(str, Enum):
    PERSONAL = "personal"
    SHARED = "shared"
    TEAM = "team"


SOURCE_ORDER = {SourceKind.PERSONAL: 0, SourceKind.SHARED: 1, SourceKind.TEAM: 2}


@dataclass(frozen=True)
class VaultSnapshotSource:
    """One decrypted vault ready for merging."""
    vault_id: str
    source: SourceKind
    snapshot: Snapshot
    team_id: Optional[str] = None
    writable: bool = True


@dataclass
class MergedView:
    """The combined, editable view across vaults."""
    entries: List[Entry] = field(default_factory=list)
    folders: List[Folder] = field(default_factory=list)
    entry_origin: Dict[str, str] = field(default_factory=dict)
    folder_origin: Dict[str, str] = field(default_factory=dict)

    def get_entry(self, entry_id: str) -> Optional[Entry]:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        return None

    def get_folder(self, folder_id: str) -> Optional[Folder]:
        for folder in self.folders:
            if folder.id == folder_id:
                return folder
        return None

    def entries_for_team(self, team_id: Optional[str]) -> List[Entry]:
        """Personal entries for None, otherwise one team's entries."""
        return [e for e in self.entries if e.team_id == team_id]


class MergeEngine:
    """Deterministic, idempotent merge over a fixed set of vault snapshots."""

    @staticmethod
    def order(sources: Iterable[VaultSnapshotSource]) -> List[VaultSnapshotSource]:
        return sorted(sources, key=lambda s: (SOURCE_ORDER[SourceKind(s.source)], s.vault_id))

    def combine(self, sources: Iterable[VaultSnapshotSource]) -> MergedView:
        ordered = self.order(sources)
        entries: Dict[str, Tuple[Entry, str]] = {}
        folders: Dict[str, Tuple[Folder, str]] = {}

        for src in ordered:
            is_team = SourceKind(src.source) == SourceKind.TEAM
            for entry in src.snapshot.entries:
                self._place(entries, entry, src, is_team)
            for folder in src.snapshot.folders:
                self._place(folders, folder, src, is_team)

        return MergedView(
            entries=[item for item, _ in entries.values()],
            folders=[item for item, _ in folders.values()],
            entry_origin={item_id: vault_id for item_id, (_, vault_id) in entries.items()},
            folder_origin={item_id: vault_id for item_id, (_, vault_id) in folders.items()},
        )

    @staticmethod
    def _place(
        slots: Dict[str, Tuple[Item, str]],
        item: Item,
        src: VaultSnapshotSource,
        is_team: bool,
    ) -> None:
        if is_team and item.team_id != src.team_id:
            item = item.model_copy(update={"team_id": src.team_id})
        if item.id not in slots:
            slots[item.id] = (item, src.vault_id)
        elif is_team:
            logger.debug("Team vault %s supersedes item %s", src.vault_id, item.id)
            slots[item.id] = (item, src.vault_id)

    @staticmethod
    def route_write(
        team_id: Optional[str],
        sources: Iterable[VaultSnapshotSource],
    ) -> VaultSnapshotSource:
        """
        Pick the single vault that owns a write.

        teamId present -> that team's vault; otherwise the personal vault.

        Raises:
            AuthorizationError: Team vault not reachable or read-only.
            NotFoundError: No personal vault is loaded.
        """
        sources = list(sources)
        if team_id:
            for src in sources:
                if SourceKind(src.source) == SourceKind.TEAM and src.team_id == team_id:
                    if not src.writable:
                        raise AuthorizationError("read-only access to team vault", status_code=403)
                    return src
            raise AuthorizationError("no access to team vault", status_code=403)

        for src in sources:
            if SourceKind(src.source) == SourceKind.PERSONAL:
                return src
        raise NotFoundError("personal vault is not loaded")

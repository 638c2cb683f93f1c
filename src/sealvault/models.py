# SealVault - Vault Data Models
#
# Schema validators for decrypted snapshot contents. Everything that comes
# out of an AEAD envelope is untrusted JSON until it passes through these
# models. Field names on the wire are camelCase; unknown fields written by
# newer clients are preserved on re-save.

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .exceptions import UnsupportedVersionError, ValidationError

SNAPSHOT_VERSION = 1


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class Entry(BaseModel):
    """One stored credential."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(default_factory=new_id, min_length=1)
    title: str
    username: str = ""
    password: str = ""
    url: Optional[str] = None
    notes: Optional[str] = None
    folder_id: Optional[str] = Field(default=None, alias="folderId")
    team_id: Optional[str] = Field(default=None, alias="teamId")
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    updated_at: datetime = Field(default_factory=utc_now, alias="updatedAt")
    favorite: bool = False
    created_by: Optional[str] = Field(default=None, alias="createdBy")

    def __repr__(self) -> str:
        # keep passwords out of tracebacks and debug logs
        return f"Entry(id={self.id!r}, title={self.title!r}, team_id={self.team_id!r})"

    __str__ = __repr__


class Folder(BaseModel):
    """Folder node; parent_id builds the tree."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(default_factory=new_id, min_length=1)
    name: str
    icon: Optional[str] = None
    parent_id: Optional[str] = Field(default=None, alias="parentId")
    team_id: Optional[str] = Field(default=None, alias="teamId")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class Snapshot(BaseModel):
    """The full decrypted working set of one vault."""

    model_config = ConfigDict(populate_by_name=True)

    v: int = SNAPSHOT_VERSION
    entries: List[Entry] = Field(default_factory=list)
    folders: List[Folder] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def entry_ids(self) -> set:
        return {e.id for e in self.entries}

    def find_entry(self, entry_id: str) -> Optional[Entry]:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        return None

    def upsert_entry(self, entry: Entry) -> "Snapshot":
        """Copy of this snapshot with entry inserted or replaced by id."""
        entries = [e for e in self.entries if e.id != entry.id]
        entries.append(entry)
        return self.model_copy(update={"entries": entries})

    def remove_entry(self, entry_id: str) -> "Snapshot":
        return self.model_copy(update={"entries": [e for e in self.entries if e.id != entry_id]})

    def upsert_folder(self, folder: Folder) -> "Snapshot":
        folders = [f for f in self.folders if f.id != folder.id]
        folders.append(folder)
        return self.model_copy(update={"folders": folders})

    def remove_folder(self, folder_id: str) -> "Snapshot":
        """Drop a folder; entries inside it move to the root."""
        folders = [f for f in self.folders if f.id != folder_id]
        entries = [
            e.model_copy(update={"folder_id": None}) if e.folder_id == folder_id else e
            for e in self.entries
        ]
        return self.model_copy(update={"folders": folders, "entries": entries})


def parse_snapshot(obj: Any) -> Snapshot:
    """
    Validate decrypted snapshot JSON.

    Raises:
        UnsupportedVersionError: v is newer than SNAPSHOT_VERSION.
        ValidationError: Anything else about the shape is wrong.
    """
    if not isinstance(obj, dict):
        raise ValidationError("snapshot must be an object")
    version = obj.get("v")
    if isinstance(version, int) and not isinstance(version, bool) and version > SNAPSHOT_VERSION:
        raise UnsupportedVersionError(version, "snapshot")
    if version != SNAPSHOT_VERSION:
        raise ValidationError(f"snapshot version {version!r} is not supported")
    try:
        return Snapshot.model_validate(obj)
    except PydanticValidationError as exc:
        raise ValidationError(f"snapshot failed validation: {exc.error_count()} error(s)") from exc


class VaultDescriptor(BaseModel):
    """One row of list-accessible-vaults, as seen by the caller.

    source tells how the caller reaches the vault: its own personal vault,
    a team membership, or a share grant. wrapped_for is "user" when the key
    is sealed to the caller's identity and "team" when it is sealed to the
    keypair of team via_team_id.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    kind: str = Field(pattern="^(personal|team)$")
    source: str = Field(pattern="^(personal|team|shared)$")
    owner_user_id: Optional[str] = None
    team_id: Optional[str] = None
    version: int = 1
    key_epoch: int = 1
    wrapped_key: str
    wrap_epoch: int = 1
    wrapped_for: str = Field(default="user", pattern="^(user|team)$")
    via_team_id: Optional[str] = None
    permissions: str = Field(default="write", pattern="^(read|write)$")
    role: Optional[str] = None

    @property
    def writable(self) -> bool:
        return self.permissions == "write"


def parse_descriptor(obj: Any) -> VaultDescriptor:
    try:
        return VaultDescriptor.model_validate(obj)
    except PydanticValidationError as exc:
        raise ValidationError(f"vault descriptor failed validation: {exc.error_count()} error(s)") from exc

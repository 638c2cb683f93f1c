# SealVault - Vault Module
#
# Client-side vault state: multi-vault merge, write routing, sharing and
# the unlocked session.

from .merge import MergedView, MergeEngine, SourceKind, VaultSnapshotSource
from .session import AutoLockTimer, LoadedVault, LoadOutcome, VaultSession
from .share import ShareProtocol, TeamKey

__all__ = [
    "MergeEngine",
    "MergedView",
    "SourceKind",
    "VaultSnapshotSource",
    "VaultSession",
    "AutoLockTimer",
    "LoadedVault",
    "LoadOutcome",
    "ShareProtocol",
    "TeamKey",
]

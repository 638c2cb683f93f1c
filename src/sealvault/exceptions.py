"""
SealVault Exception Classes

Recovery policy:
- CredentialError / AuthorizationError: never retried automatically
- KeyMismatchError: one re-fetch-and-retry, then surfaced to the user
- SnapshotCorruptError: only the affected vault is skipped
- TransportError: never assumed successful, never retried for saves
- SyncConnectionLost: raised after the bounded reconnect attempts are spent
"""


class SealVaultError(Exception):
    """Base exception for all SealVault operations"""
    pass


class CredentialError(SealVaultError):
    """Raised when a passphrase cannot unlock an identity.

    Wrong passphrase, tampered bundle and malformed bundle all raise this
    with the same message.
    """

    def __init__(self, message: str = "incorrect credentials"):
        super().__init__(message)


class KeyDerivationError(SealVaultError):
    """Raised when Argon2id cannot run (resource exhaustion)"""
    pass


class KeyMismatchError(SealVaultError):
    """Raised when a sealed vault key cannot be opened with our keypair.

    Usually means the caller holds a stale team key epoch or the identity
    was reset after the key was wrapped.
    """

    def __init__(self, message: str = "vault key could not be unwrapped", vault_id: str = None):
        super().__init__(message)
        self.vault_id = vault_id


class SnapshotCorruptError(SealVaultError):
    """Raised when an encrypted snapshot fails authentication or parsing"""

    def __init__(self, message: str = "snapshot failed authentication", vault_id: str = None):
        super().__init__(message)
        self.vault_id = vault_id


class UnsupportedVersionError(SealVaultError):
    """Raised when an envelope declares a version newer than we understand"""

    def __init__(self, version, what: str = "envelope"):
        super().__init__(f"unsupported {what} version: {version!r}")
        self.version = version


class TransportError(SealVaultError):
    """Raised when a network or storage call fails"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class SaveFailedError(TransportError):
    """Raised by flush() when one or more snapshot uploads failed

    failures maps vault id -> list of upload errors, oldest first.
    """

    def __init__(self, failures):
        self.failures = dict(failures)
        vaults = ", ".join(sorted(self.failures))
        super().__init__(f"snapshot upload failed for vault(s): {vaults}")


class SyncConnectionLost(TransportError):
    """Raised when the event stream exhausts its reconnect attempts"""
    pass


class AuthorizationError(SealVaultError):
    """Raised for revoked sessions, bad tokens and insufficient roles"""

    def __init__(self, message: str = "unauthorized", status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


class VaultLockedError(AuthorizationError):
    """Raised when an operation needs key material but the session is locked"""

    def __init__(self, message: str = "vault is locked"):
        super().__init__(message, status_code=423)


class ValidationError(SealVaultError):
    """Raised when an untrusted payload does not match its schema"""
    pass


class NotFoundError(SealVaultError):
    """Raised when a referenced record does not exist"""
    pass


class ConflictError(SealVaultError):
    """Raised when a write conflicts with existing server state"""
    pass


class StaleKeyEpochError(KeyMismatchError):
    """Raised when an upload was encrypted under a superseded team key"""

    def __init__(self, vault_id: str = None, expected: int = None, got: int = None):
        super().__init__(f"stale key epoch {got} (current {expected})", vault_id=vault_id)
        self.expected = expected
        self.got = got

# SealVault - Identity Key Store
#
# A user's long-term identity is an Ed25519 signing keypair plus an X25519
# encryption keypair. The private halves are stored server-side only inside
# a passphrase-protected bundle:
#
#   {"v": 1,
#    "kdf": {"name": "argon2id", "salt_b64", "iterations", "memorySize",
#            "parallelism", "hashLength"},
#    "enc": <AEAD envelope>}
#
# which decrypts to {"sign_sk_b64", "enc_sk_b64", "sign_pk_b64", "enc_pk_b64"}.
#
# Security:
#   - Wrong passphrase, tampered bundle and malformed bundle all surface as
#     CredentialError("incorrect credentials"). Callers cannot tell whether
#     the KDF ran, the AEAD failed, or the JSON was bad.
#   - Decrypted private keys live only on the IdentityKeyStore instance and
#     are dropped by lock().

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from nacl.public import PrivateKey

from ..exceptions import (
    CredentialError,
    UnsupportedVersionError,
    ValidationError,
    VaultLockedError,
)
from .aead import (
    AeadAuthenticationError,
    AeadPayload,
    aead_decrypt,
    aead_encrypt,
    b64decode,
    b64encode,
)
from .box import EncryptionKeyPair
from .kdf import DEFAULT_PARAMS, Argon2idParams, KdfRecord, derive_master_key, random_salt
from .signing import SigningKeyPair, registration_message

logger = logging.getLogger(__name__)

BUNDLE_VERSION = 1


@dataclass(frozen=True)
class UnlockedIdentity:
    """Decrypted identity keys. Only ever held in memory."""

    sign_secret: bytes
    enc_secret: bytes
    sign_public: bytes
    enc_public: bytes

    def to_dict(self) -> Dict[str, str]:
        return {
            "sign_sk_b64": b64encode(self.sign_secret),
            "enc_sk_b64": b64encode(self.enc_secret),
            "sign_pk_b64": b64encode(self.sign_public),
            "enc_pk_b64": b64encode(self.enc_public),
        }

    @classmethod
    def from_dict(cls, obj: Any) -> "UnlockedIdentity":
        if not isinstance(obj, dict):
            raise ValidationError("private key bundle must be an object")
        identity = cls(
            sign_secret=b64decode(obj.get("sign_sk_b64"), "sign_sk_b64"),
            enc_secret=b64decode(obj.get("enc_sk_b64"), "enc_sk_b64"),
            sign_public=b64decode(obj.get("sign_pk_b64"), "sign_pk_b64"),
            enc_public=b64decode(obj.get("enc_pk_b64"), "enc_pk_b64"),
        )
        identity.check_consistent()
        return identity

    def check_consistent(self) -> None:
        """Both secret keys must reproduce their public halves."""
        try:
            enc_pk = bytes(PrivateKey(self.enc_secret).public_key)
            sign_pk = SigningKeyPair.from_private_bytes(self.sign_secret).public_bytes
        except (TypeError, ValueError) as exc:
            raise ValidationError("private keys are malformed") from exc
        if enc_pk != self.enc_public or sign_pk != self.sign_public:
            raise ValidationError("private keys do not match public keys")

    @property
    def encryption_keypair(self) -> EncryptionKeyPair:
        return EncryptionKeyPair.from_private_bytes(self.enc_secret)

    @property
    def signing_keypair(self) -> SigningKeyPair:
        return SigningKeyPair.from_private_bytes(self.sign_secret)


@dataclass(frozen=True)
class EncryptedPrivateKeys:
    """The server-held, passphrase-protected identity bundle."""

    kdf: KdfRecord
    enc: AeadPayload

    def to_dict(self) -> Dict[str, Any]:
        return {"v": BUNDLE_VERSION, "kdf": self.kdf.to_dict(), "enc": self.enc.to_dict()}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_dict(cls, obj: Any) -> "EncryptedPrivateKeys":
        if not isinstance(obj, dict):
            raise ValidationError("key bundle must be an object")
        version = obj.get("v")
        if isinstance(version, int) and not isinstance(version, bool) and version > BUNDLE_VERSION:
            raise UnsupportedVersionError(version, "key bundle")
        if version != BUNDLE_VERSION:
            raise ValidationError("key bundle has no supported version")
        return cls(kdf=KdfRecord.from_dict(obj.get("kdf")), enc=AeadPayload.from_dict(obj.get("enc")))

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "EncryptedPrivateKeys":
        try:
            obj = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError("key bundle is not valid JSON") from exc
        return cls.from_dict(obj)


def generate_identity() -> UnlockedIdentity:
    """Create a brand-new identity (signing + encryption keypairs)."""
    signing = SigningKeyPair.generate()
    encryption = EncryptionKeyPair.generate()
    return UnlockedIdentity(
        sign_secret=signing.private_bytes,
        enc_secret=encryption.private_bytes,
        sign_public=signing.public_bytes,
        enc_public=encryption.public_bytes,
    )


def encrypt_private_keys(
    password: str,
    identity: UnlockedIdentity,
    params: Argon2idParams = DEFAULT_PARAMS,
) -> EncryptedPrivateKeys:
    """Protect identity keys under a passphrase-derived master key."""
    record = KdfRecord(salt=random_salt(), params=params)
    master_key = derive_master_key(password, record.salt, record.params)
    plaintext = json.dumps(identity.to_dict(), sort_keys=True).encode("utf-8")
    return EncryptedPrivateKeys(kdf=record, enc=aead_encrypt(master_key, plaintext))


def decrypt_private_keys(password: str, bundle: Union[EncryptedPrivateKeys, Dict[str, Any], str]) -> UnlockedIdentity:
    """
    Recover identity keys from the bundle.

    Raises:
        CredentialError: Wrong passphrase or any bundle damage (uniform).
        UnsupportedVersionError: Bundle written by a newer client.
        KeyDerivationError: Argon2id could not run.
    """
    try:
        if isinstance(bundle, str):
            bundle = EncryptedPrivateKeys.from_json(bundle)
        elif isinstance(bundle, dict):
            bundle = EncryptedPrivateKeys.from_dict(bundle)
    except ValidationError as exc:
        raise CredentialError() from exc

    master_key = derive_master_key(password, bundle.kdf.salt, bundle.kdf.params)
    try:
        plaintext = aead_decrypt(master_key, bundle.enc)
        return UnlockedIdentity.from_dict(json.loads(plaintext.decode("utf-8")))
    except (AeadAuthenticationError, ValidationError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CredentialError() from exc


def build_registration(identity: UnlockedIdentity, bundle: EncryptedPrivateKeys) -> Dict[str, str]:
    """Payload for POST /keys/register."""
    signature = identity.signing_keypair.sign(registration_message(identity.enc_public))
    return {
        "public_sign_key": b64encode(identity.sign_public),
        "public_enc_key": b64encode(identity.enc_public),
        "encrypted_private_key": bundle.to_json(),
        "enc_key_signature": b64encode(signature),
    }


class IdentityKeyStore:
    """Holds the unlocked identity for the current session only.

    Usage::

        store = IdentityKeyStore()
        await store.unlock("passphrase", bundle_json)
        keys = store.identity
        store.lock()
    """

    def __init__(self):
        self._identity: Optional[UnlockedIdentity] = None

    @property
    def is_unlocked(self) -> bool:
        return self._identity is not None

    @property
    def identity(self) -> UnlockedIdentity:
        if self._identity is None:
            raise VaultLockedError()
        return self._identity

    async def unlock(self, password: str, bundle) -> UnlockedIdentity:
        """Derive + decrypt off the event loop, then hold the keys."""
        identity = await asyncio.to_thread(decrypt_private_keys, password, bundle)
        self._identity = identity
        return identity

    def adopt(self, identity: UnlockedIdentity) -> None:
        """Hold a freshly generated identity (key setup path)."""
        self._identity = identity

    def lock(self) -> None:
        """Drop private key material."""
        self._identity = None

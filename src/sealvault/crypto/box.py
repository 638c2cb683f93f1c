# SealVault - Vault Key Wrapping
#
# Anonymous sealed boxes (X25519 + XSalsa20-Poly1305, libsodium
# crypto_box_seal). Only the recipient's public key is needed to wrap, so
# the server can broker shares without ever seeing a vault key.

from dataclasses import dataclass

import nacl.exceptions
from nacl.public import PrivateKey, PublicKey, SealedBox

from ..exceptions import KeyMismatchError, ValidationError
from .aead import KEY_SIZE, b64decode, b64encode, random_bytes

VAULT_KEY_SIZE = KEY_SIZE


@dataclass
class EncryptionKeyPair:
    """X25519 keypair used to receive wrapped vault keys."""
    private_key: PrivateKey

    @classmethod
    def generate(cls) -> "EncryptionKeyPair":
        return cls(private_key=PrivateKey.generate())

    @classmethod
    def from_private_bytes(cls, data: bytes) -> "EncryptionKeyPair":
        return cls(private_key=PrivateKey(data))

    @classmethod
    def from_seed(cls, seed: bytes) -> "EncryptionKeyPair":
        """Deterministic keypair from a 32-byte seed (team keypairs)."""
        return cls(private_key=PrivateKey.from_seed(seed))

    @property
    def public_bytes(self) -> bytes:
        return bytes(self.private_key.public_key)

    @property
    def private_bytes(self) -> bytes:
        return bytes(self.private_key)


def generate_vault_key() -> bytes:
    """Fresh random 256-bit vault key."""
    return random_bytes(VAULT_KEY_SIZE)


def wrap_vault_key(recipient_public_key: bytes, vault_key: bytes) -> str:
    """Seal a vault key to a recipient. Returns base64 sealed blob."""
    if len(vault_key) != VAULT_KEY_SIZE:
        raise ValueError("vault key must be 32 bytes")
    try:
        box = SealedBox(PublicKey(recipient_public_key))
    except (nacl.exceptions.TypeError, nacl.exceptions.ValueError) as exc:
        raise ValidationError("invalid recipient public key") from exc
    return b64encode(box.encrypt(vault_key))


def unwrap_vault_key(own_public_key: bytes, own_secret_key: bytes, sealed_b64: str) -> bytes:
    """
    Open a sealed vault key.

    Raises:
        KeyMismatchError: The blob was not sealed to this keypair (or was
            tampered with). Never returns garbage key material.
    """
    try:
        sealed = b64decode(sealed_b64, "wrapped_key")
    except ValidationError as exc:
        raise KeyMismatchError("wrapped key is not valid base64") from exc

    try:
        private_key = PrivateKey(own_secret_key)
    except (TypeError, ValueError) as exc:
        raise KeyMismatchError("secret key is malformed") from exc
    if bytes(private_key.public_key) != own_public_key:
        raise KeyMismatchError("secret key does not match public key")

    try:
        vault_key = SealedBox(private_key).decrypt(sealed)
    except nacl.exceptions.CryptoError as exc:
        raise KeyMismatchError() from exc
    if len(vault_key) != VAULT_KEY_SIZE:
        raise KeyMismatchError("unwrapped key has wrong length")
    return vault_key


def team_keypair(team_key: bytes) -> EncryptionKeyPair:
    """The X25519 keypair a team key stands for.

    Team-targeted share grants are sealed to this public key; any member
    holding the team key can derive the secret half.
    """
    return EncryptionKeyPair.from_seed(team_key)

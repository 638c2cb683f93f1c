# SealVault - Identity Signing Keys
#
# Ed25519 (cryptography) keypair carried in every identity bundle. At key
# registration the signing key signs the encryption public key; the server
# verifies that binding before storing either key.

from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

REGISTRATION_DOMAIN = b"sealvault:keys:register:v1:"


@dataclass
class SigningKeyPair:
    """Ed25519 key pair for identity binding."""
    private_key: ed25519.Ed25519PrivateKey
    public_key: ed25519.Ed25519PublicKey

    @classmethod
    def generate(cls) -> "SigningKeyPair":
        private = ed25519.Ed25519PrivateKey.generate()
        return cls(private_key=private, public_key=private.public_key())

    @classmethod
    def from_private_bytes(cls, data: bytes) -> "SigningKeyPair":
        private = ed25519.Ed25519PrivateKey.from_private_bytes(data)
        return cls(private_key=private, public_key=private.public_key())

    def sign(self, data: bytes) -> bytes:
        """Sign data with Ed25519. Returns 64-byte signature."""
        return self.private_key.sign(data)

    @property
    def public_bytes(self) -> bytes:
        return self.public_key.public_bytes(
            serialization.Encoding.Raw,
            serialization.PublicFormat.Raw,
        )

    @property
    def private_bytes(self) -> bytes:
        return self.private_key.private_bytes(
            serialization.Encoding.Raw,
            serialization.PrivateFormat.Raw,
            serialization.NoEncryption(),
        )


def verify_signature(public_key_bytes: bytes, signature: bytes, data: bytes) -> bool:
    """Verify an Ed25519 signature. Returns True if valid."""
    try:
        pub = ed25519.Ed25519PublicKey.from_public_bytes(public_key_bytes)
        pub.verify(signature, data)
        return True
    except (InvalidSignature, ValueError):
        return False


def registration_message(enc_public_key: bytes) -> bytes:
    """Bytes the signing key signs to vouch for an encryption key."""
    return REGISTRATION_DOMAIN + enc_public_key

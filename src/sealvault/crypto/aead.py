# SealVault - AEAD Envelope
#
# XChaCha20-Poly1305 (IETF) via libsodium (PyNaCl bindings).
# 192-bit random nonces, so nonce reuse under one key is not a concern.
# Associated data is carried base64-encoded in the envelope when present.
#
# Wire shape (v1):
#   {"v": 1, "alg": "xchacha20poly1305_ietf",
#    "nonce_b64": "...", "cipher_b64": "...", "ad_b64": "..."?}

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Dict, Optional

import nacl.bindings
import nacl.exceptions
import nacl.utils

from ..exceptions import UnsupportedVersionError, ValidationError

AEAD_VERSION = 1
AEAD_ALG = "xchacha20poly1305_ietf"
KEY_SIZE = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_KEYBYTES
NONCE_SIZE = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_NPUBBYTES


class AeadAuthenticationError(Exception):
    """Ciphertext, nonce, AD or key did not authenticate."""


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str, field_name: str = "value") -> bytes:
    """Strict base64 decode. Raises ValidationError on bad input."""
    if not isinstance(data, str):
        raise ValidationError(f"{field_name} must be a base64 string")
    try:
        return base64.b64decode(data.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValidationError(f"{field_name} is not valid base64") from exc


def random_bytes(size: int) -> bytes:
    """CSPRNG bytes from libsodium."""
    return nacl.utils.random(size)


@dataclass(frozen=True)
class AeadPayload:
    """One sealed message: nonce + ciphertext (+ optional associated data)."""

    nonce: bytes
    cipher: bytes
    ad: Optional[bytes] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "v": AEAD_VERSION,
            "alg": AEAD_ALG,
            "nonce_b64": b64encode(self.nonce),
            "cipher_b64": b64encode(self.cipher),
        }
        if self.ad is not None:
            out["ad_b64"] = b64encode(self.ad)
        return out

    @classmethod
    def from_dict(cls, obj: Any) -> "AeadPayload":
        """Parse an untrusted envelope dict.

        Raises:
            UnsupportedVersionError: v is a newer version than we speak.
            ValidationError: Any other structural problem.
        """
        if not isinstance(obj, dict):
            raise ValidationError("AEAD envelope must be an object")
        version = obj.get("v")
        if not isinstance(version, int) or isinstance(version, bool):
            raise ValidationError("AEAD envelope missing integer 'v'")
        if version > AEAD_VERSION:
            raise UnsupportedVersionError(version, "AEAD envelope")
        if version != AEAD_VERSION:
            raise ValidationError(f"AEAD envelope version {version} is not supported")
        if obj.get("alg") != AEAD_ALG:
            raise ValidationError(f"unsupported AEAD algorithm: {obj.get('alg')!r}")

        nonce = b64decode(obj.get("nonce_b64"), "nonce_b64")
        if len(nonce) != NONCE_SIZE:
            raise ValidationError(f"nonce must be {NONCE_SIZE} bytes")
        cipher = b64decode(obj.get("cipher_b64"), "cipher_b64")
        ad = None
        if obj.get("ad_b64") is not None:
            ad = b64decode(obj["ad_b64"], "ad_b64")
        return cls(nonce=nonce, cipher=cipher, ad=ad)


def aead_encrypt(key: bytes, plaintext: bytes, ad: Optional[bytes] = None) -> AeadPayload:
    """Encrypt with a fresh random nonce."""
    if len(key) != KEY_SIZE:
        raise ValueError(f"AEAD key must be {KEY_SIZE} bytes; got {len(key)}")
    nonce = random_bytes(NONCE_SIZE)
    cipher = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_encrypt(
        plaintext, ad, nonce, key
    )
    return AeadPayload(nonce=nonce, cipher=cipher, ad=ad)


def aead_decrypt(key: bytes, payload: AeadPayload) -> bytes:
    """Decrypt and authenticate.

    Raises:
        AeadAuthenticationError: On any authentication failure. Never returns
            partially decrypted or unauthenticated data.
    """
    if len(key) != KEY_SIZE:
        raise AeadAuthenticationError("wrong key size")
    try:
        return nacl.bindings.crypto_aead_xchacha20poly1305_ietf_decrypt(
            payload.cipher, payload.ad, payload.nonce, key
        )
    except nacl.exceptions.CryptoError as exc:
        raise AeadAuthenticationError("authentication failed") from exc

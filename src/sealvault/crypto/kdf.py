# SealVault - Key Derivation
#
# Passphrase + salt + params -> 256-bit master key (Argon2id, argon2-cffi).
# The params travel with the salt in the persisted record so raising the
# defaults later never breaks existing ciphertexts.

import logging
from dataclasses import dataclass
from typing import Any, Dict

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw

from ..exceptions import KeyDerivationError, ValidationError
from .aead import b64decode, b64encode, random_bytes

logger = logging.getLogger(__name__)

KDF_NAME = "argon2id"
SALT_LENGTH = 16

# Upper bounds applied to records read back from storage, so a tampered
# record cannot make the client allocate unbounded memory.
MAX_ITERATIONS = 64
MAX_MEMORY_KIB = 4 * 1024 * 1024
MAX_PARALLELISM = 64


@dataclass(frozen=True)
class Argon2idParams:
    """Argon2id cost parameters. memory_size is in KiB."""

    iterations: int = 3
    memory_size: int = 64 * 1024
    parallelism: int = 1
    hash_length: int = 32

    def validate(self) -> None:
        if not 1 <= self.iterations <= MAX_ITERATIONS:
            raise ValidationError(f"iterations out of range: {self.iterations}")
        if not 8 * self.parallelism <= self.memory_size <= MAX_MEMORY_KIB:
            raise ValidationError(f"memorySize out of range: {self.memory_size}")
        if not 1 <= self.parallelism <= MAX_PARALLELISM:
            raise ValidationError(f"parallelism out of range: {self.parallelism}")
        if self.hash_length != 32:
            raise ValidationError("hashLength must be 32 for a symmetric key")


DEFAULT_PARAMS = Argon2idParams()


@dataclass(frozen=True)
class KdfRecord:
    """Persisted KDF inputs (everything except the passphrase)."""

    salt: bytes
    params: Argon2idParams

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": KDF_NAME,
            "salt_b64": b64encode(self.salt),
            "iterations": self.params.iterations,
            "memorySize": self.params.memory_size,
            "parallelism": self.params.parallelism,
            "hashLength": self.params.hash_length,
        }

    @classmethod
    def from_dict(cls, obj: Any) -> "KdfRecord":
        if not isinstance(obj, dict):
            raise ValidationError("kdf record must be an object")
        if obj.get("name") != KDF_NAME:
            raise ValidationError(f"unsupported kdf: {obj.get('name')!r}")
        try:
            params = Argon2idParams(
                iterations=_strict_int(obj["iterations"]),
                memory_size=_strict_int(obj["memorySize"]),
                parallelism=_strict_int(obj["parallelism"]),
                hash_length=_strict_int(obj["hashLength"]),
            )
        except KeyError as exc:
            raise ValidationError(f"kdf record missing {exc.args[0]}") from exc
        params.validate()
        salt = b64decode(obj.get("salt_b64"), "salt_b64")
        if len(salt) < 8:
            raise ValidationError("salt too short")
        return cls(salt=salt, params=params)


def _strict_int(value: Any) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError("kdf parameters must be integers")
    return value


def random_salt() -> bytes:
    """Generate a fresh 128-bit salt."""
    return random_bytes(SALT_LENGTH)


def derive_master_key(password: str, salt: bytes, params: Argon2idParams = DEFAULT_PARAMS) -> bytes:
    """
    Derive the master key from a passphrase. Deterministic for fixed inputs.

    Args:
        password: User passphrase
        salt: Persisted random salt
        params: Persisted Argon2id parameters

    Returns:
        params.hash_length bytes of key material

    Raises:
        KeyDerivationError: Argon2 could not run (typically memory exhaustion)
    """
    params.validate()
    try:
        return hash_secret_raw(
            secret=password.encode("utf-8"),
            salt=salt,
            time_cost=params.iterations,
            memory_cost=params.memory_size,
            parallelism=params.parallelism,
            hash_len=params.hash_length,
            type=Type.ID,
        )
    except (HashingError, MemoryError) as exc:
        logger.error("Argon2id derivation failed: %s", type(exc).__name__)
        raise KeyDerivationError("key derivation failed") from exc

# SealVault - Crypto Module
#
# Key hierarchy:
#   passphrase --Argon2id--> master key --AEAD--> identity private keys
#   identity enc keypair <--sealed box-- per-vault key
#   vault key --XChaCha20-Poly1305--> snapshot blob

from .aead import AeadPayload, aead_decrypt, aead_encrypt
from .box import (
    EncryptionKeyPair,
    generate_vault_key,
    team_keypair,
    unwrap_vault_key,
    wrap_vault_key,
)
from .identity import (
    EncryptedPrivateKeys,
    IdentityKeyStore,
    UnlockedIdentity,
    build_registration,
    decrypt_private_keys,
    encrypt_private_keys,
    generate_identity,
)
from .kdf import DEFAULT_PARAMS, Argon2idParams, KdfRecord, derive_master_key, random_salt
from .signing import SigningKeyPair, verify_signature
from .snapshot import decrypt_snapshot, encrypt_snapshot, vault_associated_data

__all__ = [
    "AeadPayload",
    "aead_encrypt",
    "aead_decrypt",
    "EncryptionKeyPair",
    "generate_vault_key",
    "team_keypair",
    "wrap_vault_key",
    "unwrap_vault_key",
    "EncryptedPrivateKeys",
    "IdentityKeyStore",
    "UnlockedIdentity",
    "build_registration",
    "decrypt_private_keys",
    "encrypt_private_keys",
    "generate_identity",
    "DEFAULT_PARAMS",
    "Argon2idParams",
    "KdfRecord",
    "derive_master_key",
    "random_salt",
    "SigningKeyPair",
    "verify_signature",
    "encrypt_snapshot",
    "decrypt_snapshot",
    "vault_associated_data",
]

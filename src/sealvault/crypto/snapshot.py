# SealVault - Snapshot Codec
#
# Encrypts the {entries, folders} working set of one vault under its vault
# key. Persisted blob format:
#
#   {"v": 1, "kind": "vault_snapshot", "enc": <AEAD envelope>}
#
# where enc decrypts to {"v": 1, "entries": [...], "folders": [...]}.
#
# Associated data binds a blob to the vault (and key epoch) it was written
# for, so a blob copied into another vault fails to decrypt there.
# A version newer than 1 at either layer is rejected outright.

import json
import logging
from typing import Any, Optional, Union

from ..exceptions import SnapshotCorruptError, UnsupportedVersionError, ValidationError
from ..models import Snapshot, parse_snapshot
from .aead import AeadAuthenticationError, AeadPayload, aead_decrypt, aead_encrypt

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = 1
ENVELOPE_KIND = "vault_snapshot"


def canonical_json(obj: Any) -> bytes:
    """Stable serialization (sorted keys, no whitespace)."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def vault_associated_data(vault_id: str, key_epoch: int = 1) -> bytes:
    """Associated data that pins a snapshot to one vault and key epoch."""
    return f"sealvault:vault:{vault_id}:epoch:{key_epoch}".encode("utf-8")


def encrypt_snapshot(
    vault_key: bytes,
    snapshot: Snapshot,
    associated_data: Optional[bytes] = None,
) -> bytes:
    """Serialize + encrypt a snapshot. Returns the blob bytes to upload."""
    enc = aead_encrypt(vault_key, canonical_json(snapshot.to_wire()), associated_data)
    envelope = {"v": ENVELOPE_VERSION, "kind": ENVELOPE_KIND, "enc": enc.to_dict()}
    return canonical_json(envelope)


def _parse_envelope(blob: Union[bytes, str]) -> AeadPayload:
    try:
        obj = json.loads(blob)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise SnapshotCorruptError("snapshot blob is not JSON") from exc
    if not isinstance(obj, dict):
        raise SnapshotCorruptError("snapshot blob is not an object")

    version = obj.get("v")
    if isinstance(version, int) and not isinstance(version, bool) and version > ENVELOPE_VERSION:
        raise UnsupportedVersionError(version, "snapshot envelope")
    if version != ENVELOPE_VERSION or obj.get("kind") != ENVELOPE_KIND:
        raise SnapshotCorruptError("not a v1 vault_snapshot envelope")
    try:
        return AeadPayload.from_dict(obj.get("enc"))
    except ValidationError as exc:
        raise SnapshotCorruptError(str(exc)) from exc


def decrypt_snapshot(
    vault_key: bytes,
    blob: Union[bytes, str],
    expected_ad: Optional[bytes] = None,
) -> Snapshot:
    """
    Decrypt + validate a snapshot blob.

    Args:
        vault_key: 32-byte vault key
        blob: Envelope bytes as stored
        expected_ad: When given, the envelope's associated data must match

    Raises:
        UnsupportedVersionError: Envelope or payload from a newer format.
        SnapshotCorruptError: Authentication, AD binding or schema failure.
    """
    payload = _parse_envelope(blob)
    if expected_ad is not None and payload.ad != expected_ad:
        raise SnapshotCorruptError("snapshot is bound to a different vault")

    try:
        plaintext = aead_decrypt(vault_key, payload)
    except AeadAuthenticationError as exc:
        raise SnapshotCorruptError() from exc

    try:
        return parse_snapshot(json.loads(plaintext.decode("utf-8")))
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
        raise SnapshotCorruptError(f"decrypted snapshot is malformed: {exc}") from exc

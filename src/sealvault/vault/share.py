# SealVault - Share Protocol (client side)
#
# Issues new wrapped-key grants to users and teams. Sharing never touches
# vault contents: it seals an existing vault key to another public key and
# asks the server to persist the grant or membership.
#
# The one exception is team key rotation, which re-encrypts the team
# vault's latest server snapshot under the new key. The server accepts the
# rotation only if that snapshot is still the latest one.

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from ..core.audit_log import EventSeverity, EventType, log_security_event
from ..crypto.aead import b64decode, b64encode
from ..crypto.box import generate_vault_key, team_keypair, unwrap_vault_key, wrap_vault_key
from ..crypto.identity import IdentityKeyStore
from ..crypto.snapshot import decrypt_snapshot, encrypt_snapshot, vault_associated_data
from ..exceptions import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TeamKey:
    """A team vault key together with its epoch."""
    team_id: str
    vault_id: str
    key: bytes
    epoch: int = 1

    def __repr__(self) -> str:
        return f"TeamKey(team_id={self.team_id!r}, epoch={self.epoch})"


class ShareProtocol:
    """Grant and membership operations for an unlocked identity.

    Args:
        client: VaultServerClient (or any object with the same coroutines).
        keys: Holds the caller's unlocked identity.
    """

    def __init__(self, client, keys: IdentityKeyStore):
        self.client = client
        self.keys = keys

    async def _user_public_key(self, user_id: str) -> bytes:
        return b64decode(await self.client.get_public_key(user_id), "public_enc_key")

    async def share_with_user(
        self,
        vault_id: str,
        vault_key: bytes,
        user_id: str,
        permissions: str = "read",
    ) -> Dict[str, Any]:
        """Seal vault_key to a user's identity and persist the grant."""
        wrapped = wrap_vault_key(await self._user_public_key(user_id), vault_key)
        share = await self.client.create_share(
            vault_id, wrapped, permissions=permissions, target_user_id=user_id
        )
        log_security_event(
            EventType.VAULT_SHARED,
            EventSeverity.INFO,
            "Vault shared with user",
            details={"vault_id": vault_id, "share_id": share["id"], "permissions": permissions},
        )
        return share

    async def share_with_team(
        self,
        vault_id: str,
        vault_key: bytes,
        team_id: str,
        permissions: str = "read",
    ) -> Dict[str, Any]:
        """Seal vault_key to the team keypair for the team's current epoch."""
        info = await self.client.get_team_public_key(team_id)
        wrapped = wrap_vault_key(b64decode(info["team_public_key"], "team_public_key"), vault_key)
        share = await self.client.create_share(
            vault_id, wrapped, permissions=permissions, target_team_id=team_id
        )
        log_security_event(
            EventType.VAULT_SHARED,
            EventSeverity.INFO,
            "Vault shared with team",
            details={"vault_id": vault_id, "team_id": team_id, "share_id": share["id"]},
        )
        return share

    async def create_team(self, name: str) -> Tuple[Dict[str, Any], TeamKey]:
        """Create a team with a fresh key wrapped for the creator."""
        identity = self.keys.identity
        team_key = generate_vault_key()
        created = await self.client.create_team(
            name,
            wrap_vault_key(identity.enc_public, team_key),
            b64encode(team_keypair(team_key).public_bytes),
        )
        return created, TeamKey(team_id=created["team_id"], vault_id=created["vault_id"], key=team_key)

    async def invite_member(self, team: TeamKey, user_id: str, role: str = "viewer") -> Dict[str, Any]:
        """Invite a user; the team key is wrapped for them immediately."""
        wrapped = wrap_vault_key(await self._user_public_key(user_id), team.key)
        return await self.client.invite_member(team.team_id, user_id, role, wrapped)

    async def accept_invite(self, team_id: str) -> Dict[str, Any]:
        return await self.client.accept_invite(team_id)

    async def update_member_role(self, team_id: str, member_id: str, role: str) -> Dict[str, Any]:
        return await self.client.update_member_role(team_id, member_id, role)

    async def remove_member(
        self,
        team: TeamKey,
        member_id: str,
        rotate: bool = False,
    ) -> Optional[TeamKey]:
        """
        Revoke a membership, optionally rotating the team key afterwards.

        Returns the new TeamKey when rotate is set.
        """
        await self.client.remove_member(team.team_id, member_id)
        if rotate:
            return await self.rotate_team_key(team)
        return None

    async def rotate_team_key(self, team: TeamKey) -> TeamKey:
        """
        Replace the team key with a fresh one at epoch+1.

        - wraps the new key for every non-revoked member (active and invited)
        - re-seals grants targeting the team to the new team keypair
        - re-wraps grants of the team vault itself with the new key
        - re-encrypts the latest team snapshot, fetched from the server

        The server applies all of it in one transaction, and only while the
        re-encrypted blob is still the latest one.

        Raises:
            ValidationError: A live member has no registered keys.
            KeyMismatchError: A team-targeted grant was not sealed to the
                current team key.
            ConflictError: Another member wrote in the meantime; retry.
        """
        new_key = generate_vault_key()
        new_epoch = team.epoch + 1
        old_pair = team_keypair(team.key)
        new_pair = team_keypair(new_key)

        member_wraps: Dict[str, str] = {}
        for member in await self.client.list_members(team.team_id):
            if member.get("revoked_at"):
                continue
            if not member.get("public_enc_key"):
                raise ValidationError(f"member {member['id']} has no registered keys")
            member_wraps[member["id"]] = wrap_vault_key(
                b64decode(member["public_enc_key"], "public_enc_key"), new_key
            )

        share_wraps: Dict[str, str] = {}
        for share in await self.client.list_team_shares(team.team_id):
            if share["source_vault_id"] == team.vault_id:
                shared_key = new_key
            else:
                shared_key = unwrap_vault_key(old_pair.public_bytes, old_pair.private_bytes, share["wrapped_key"])

            if share.get("target_team_id") == team.team_id:
                recipient = new_pair.public_bytes
            elif share.get("target_team_id"):
                info = await self.client.get_team_public_key(share["target_team_id"])
                recipient = b64decode(info["team_public_key"], "team_public_key")
            else:
                if not share.get("target_public_key"):
                    raise ValidationError(f"share {share['id']} target has no registered keys")
                recipient = b64decode(share["target_public_key"], "target_public_key")
            share_wraps[share["id"]] = wrap_vault_key(recipient, shared_key)

        payload: Dict[str, Any] = {
            "new_epoch": new_epoch,
            "team_public_key": b64encode(new_pair.public_bytes),
            "member_wraps": member_wraps,
            "share_wraps": share_wraps,
        }
        latest = await self.client.fetch_latest_blob_with_id(team.vault_id)
        if latest is not None:
            data, blob_id = latest
            snapshot = decrypt_snapshot(team.key, data, vault_associated_data(team.vault_id, team.epoch))
            blob = encrypt_snapshot(new_key, snapshot, vault_associated_data(team.vault_id, new_epoch))
            payload["blob_b64"] = b64encode(blob)
            payload["content_sha256"] = hashlib.sha256(blob).hexdigest()
            payload["replaces_blob_id"] = blob_id

        await self.client.rotate_team_key(team.team_id, payload)
        logger.info("Rotated team %s to key epoch %d", team.team_id, new_epoch)
        return TeamKey(team_id=team.team_id, vault_id=team.vault_id, key=new_key, epoch=new_epoch)

# SealVault - Server Store
#
# SQLite-backed storage for the zero-knowledge server. The server only ever
# sees public keys, sealed (wrapped) vault keys and encrypted snapshot blobs.
#
# Records are append-mostly: sessions, memberships and share grants are
# revoked with flags, never deleted; member key wraps gain a row per key
# epoch. The latest blob per vault is decided by insertion order.
#
# `vault_access()` is the single access check used both by direct reads and
# by per-subscriber event filtering in the sync broker.

import hashlib
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from ..core.db import transaction
from ..exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StaleKeyEpochError,
    ValidationError,
)
from ..sync.events import SyncEvent

logger = logging.getLogger(__name__)

ROLES = ("owner", "admin", "editor", "viewer")
WRITE_ROLES = frozenset({"owner", "admin", "editor"})
MANAGE_ROLES = frozenset({"owner", "admin"})
PERMISSIONS = ("read", "write")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    display_name TEXT,
    email TEXT,
    public_sign_key TEXT,
    public_enc_key TEXT,
    encrypted_private_key TEXT,
    enc_key_signature TEXT,
    keys_reset_at TEXT,
    is_admin INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    created_at TEXT NOT NULL,
    expires_at INTEGER NOT NULL,
    revoked_at TEXT
);

CREATE TABLE IF NOT EXISTS teams (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_by TEXT NOT NULL REFERENCES users(id),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS vaults (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL CHECK (kind IN ('personal', 'team')),
    owner_user_id TEXT REFERENCES users(id),
    team_id TEXT REFERENCES teams(id),
    version INTEGER NOT NULL DEFAULT 1,
    key_epoch INTEGER NOT NULL DEFAULT 1,
    team_public_key TEXT,
    vault_key_wrapped TEXT,
    created_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_vaults_personal
    ON vaults(owner_user_id) WHERE kind = 'personal';
CREATE UNIQUE INDEX IF NOT EXISTS idx_vaults_team
    ON vaults(team_id) WHERE kind = 'team';

CREATE TABLE IF NOT EXISTS team_members (
    id TEXT PRIMARY KEY,
    team_id TEXT NOT NULL REFERENCES teams(id),
    user_id TEXT NOT NULL REFERENCES users(id),
    role TEXT NOT NULL,
    invited_by TEXT,
    invited_at TEXT NOT NULL,
    joined_at TEXT,
    revoked_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_members_team ON team_members(team_id);
CREATE INDEX IF NOT EXISTS idx_members_user ON team_members(user_id);

CREATE TABLE IF NOT EXISTS member_key_wraps (
    member_id TEXT NOT NULL REFERENCES team_members(id),
    epoch INTEGER NOT NULL,
    wrapped_key TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (member_id, epoch)
);

CREATE TABLE IF NOT EXISTS blobs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    vault_id TEXT NOT NULL REFERENCES vaults(id),
    blob_type TEXT NOT NULL DEFAULT 'snapshot',
    data BLOB NOT NULL,
    content_sha256 TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    key_epoch INTEGER NOT NULL,
    created_by TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_blobs_vault ON blobs(vault_id, seq);

CREATE TABLE IF NOT EXISTS shares (
    id TEXT PRIMARY KEY,
    source_vault_id TEXT NOT NULL REFERENCES vaults(id),
    target_user_id TEXT REFERENCES users(id),
    target_team_id TEXT REFERENCES teams(id),
    wrapped_key TEXT NOT NULL,
    permissions TEXT NOT NULL,
    key_epoch INTEGER NOT NULL DEFAULT 1,
    recipient_epoch INTEGER NOT NULL DEFAULT 0,
    created_by TEXT,
    created_at TEXT NOT NULL,
    superseded_at TEXT,
    revoked_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_shares_source ON shares(source_vault_id);
"""

_MEMBER_ACTIVE = "joined_at IS NOT NULL AND revoked_at IS NULL"
_SHARE_CURRENT = "superseded_at IS NULL AND revoked_at IS NULL"
_MEMBER_ACTIVE_M = "m.joined_at IS NOT NULL AND m.revoked_at IS NULL"
_SHARE_CURRENT_S = "s.superseded_at IS NULL AND s.revoked_at IS NULL"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def _row(row) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _stronger(a: Optional[str], b: Optional[str]) -> Optional[str]:
    if a == "write" or b == "write":
        return "write"
    return a or b


class ServerStore:
    """Relational storage plus the access-control check.

    Each method opens its own short-lived connection; writes are serialized
    with a process-local lock on top of SQLite's own locking.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with transaction(self.db_path) as conn:
            conn.executescript(_SCHEMA)
        logger.info("Server store ready at %s", self.db_path)

    # ------------------------------------------------------------------
    # Users and identity keys
    # ------------------------------------------------------------------

    def ensure_user(self, username: str, display_name: str = None, email: str = None) -> Dict[str, Any]:
        """Return the user for username, creating it on first login."""
        username = username.strip()
        if not username:
            raise ValidationError("username is required")
        with self._lock, transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
            if row is not None:
                return dict(row)
            user_id = _new_id()
            conn.execute(
                "INSERT INTO users (id, username, display_name, email, created_at) VALUES (?, ?, ?, ?, ?)",
                (user_id, username, display_name or username, email, _now()),
            )
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return dict(row)

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with transaction(self.db_path) as conn:
            return _row(conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone())

    def is_admin(self, user_id: str) -> bool:
        user = self.get_user(user_id)
        return bool(user and user["is_admin"])

    def set_admin(self, username: str, admin: bool = True) -> Dict[str, Any]:
        """Grant or withdraw the server admin flag (audit access)."""
        with self._lock, transaction(self.db_path) as conn:
            updated = conn.execute(
                "UPDATE users SET is_admin = ? WHERE username = ?", (1 if admin else 0, username.strip())
            ).rowcount
            if not updated:
                raise NotFoundError("user not found")
            return dict(conn.execute("SELECT * FROM users WHERE username = ?", (username.strip(),)).fetchone())

    def lookup_user(self, username: str) -> Optional[Dict[str, Any]]:
        with transaction(self.db_path) as conn:
            return _row(
                conn.execute("SELECT * FROM users WHERE username = ?", (username.strip(),)).fetchone()
            )

    def register_keys(
        self,
        user_id: str,
        public_sign_key: str,
        public_enc_key: str,
        encrypted_private_key: str,
        enc_key_signature: str = None,
    ) -> None:
        """Store an identity. Existing keys must be reset first."""
        with self._lock, transaction(self.db_path) as conn:
            row = conn.execute("SELECT public_enc_key FROM users WHERE id = ?", (user_id,)).fetchone()
            if row is None:
                raise NotFoundError("user not found")
            if row["public_enc_key"]:
                raise ConflictError("keys already registered")
            conn.execute(
                "UPDATE users SET public_sign_key = ?, public_enc_key = ?, encrypted_private_key = ?, "
                "enc_key_signature = ? WHERE id = ?",
                (public_sign_key, public_enc_key, encrypted_private_key, enc_key_signature, user_id),
            )

    def get_keys(self, user_id: str) -> Optional[Dict[str, Any]]:
        user = self.get_user(user_id)
        if user is None or not user["public_enc_key"]:
            return None
        return {
            "public_sign_key": user["public_sign_key"],
            "public_enc_key": user["public_enc_key"],
            "encrypted_private_key": user["encrypted_private_key"],
            "enc_key_signature": user["enc_key_signature"],
        }

    def get_public_enc_key(self, user_id: str) -> Optional[str]:
        user = self.get_user(user_id)
        return user["public_enc_key"] if user else None

    def reset_keys(self, user_id: str) -> None:
        """Discard the identity. Every wrap made for the old key is lost."""
        with self._lock, transaction(self.db_path) as conn:
            cur = conn.execute(
                "UPDATE users SET public_sign_key = NULL, public_enc_key = NULL, "
                "encrypted_private_key = NULL, enc_key_signature = NULL, keys_reset_at = ? WHERE id = ?",
                (_now(), user_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError("user not found")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, user_id: str, expires_at: int) -> str:
        session_id = _new_id()
        with self._lock, transaction(self.db_path) as conn:
            conn.execute(
                "INSERT INTO sessions (id, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
                (session_id, user_id, _now(), expires_at),
            )
        return session_id

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        with transaction(self.db_path) as conn:
            return _row(conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone())

    def revoke_session(self, session_id: str) -> bool:
        with self._lock, transaction(self.db_path) as conn:
            cur = conn.execute(
                "UPDATE sessions SET revoked_at = ? WHERE id = ? AND revoked_at IS NULL",
                (_now(), session_id),
            )
            return cur.rowcount > 0

    def revoke_user_sessions(self, user_id: str) -> List[str]:
        with self._lock, transaction(self.db_path) as conn:
            ids = [
                r["id"]
                for r in conn.execute(
                    "SELECT id FROM sessions WHERE user_id = ? AND revoked_at IS NULL", (user_id,)
                )
            ]
            conn.execute(
                "UPDATE sessions SET revoked_at = ? WHERE user_id = ? AND revoked_at IS NULL",
                (_now(), user_id),
            )
        return ids

    # ------------------------------------------------------------------
    # Vaults
    # ------------------------------------------------------------------

    def create_personal_vault(self, user_id: str, wrapped_key: str) -> Dict[str, Any]:
        """Create the caller's single personal vault."""
        if not wrapped_key:
            raise ValidationError("wrapped key is required")
        with self._lock, transaction(self.db_path) as conn:
            existing = conn.execute(
                "SELECT id FROM vaults WHERE kind = 'personal' AND owner_user_id = ?", (user_id,)
            ).fetchone()
            if existing is not None:
                raise ConflictError("personal vault already exists")
            vault_id = _new_id()
            conn.execute(
                "INSERT INTO vaults (id, kind, owner_user_id, vault_key_wrapped, created_at) "
                "VALUES (?, 'personal', ?, ?, ?)",
                (vault_id, user_id, wrapped_key, _now()),
            )
            return dict(conn.execute("SELECT * FROM vaults WHERE id = ?", (vault_id,)).fetchone())

    def get_vault(self, vault_id: str) -> Optional[Dict[str, Any]]:
        with transaction(self.db_path) as conn:
            return _row(conn.execute("SELECT * FROM vaults WHERE id = ?", (vault_id,)).fetchone())

    def get_team_vault(self, team_id: str) -> Optional[Dict[str, Any]]:
        with transaction(self.db_path) as conn:
            return _row(
                conn.execute("SELECT * FROM vaults WHERE kind = 'team' AND team_id = ?", (team_id,)).fetchone()
            )

    def vault_access(self, vault_id: str, user_id: str) -> Optional[str]:
        """Return 'write', 'read' or None for user_id on vault_id.

        Sources of access: personal ownership, active team membership,
        a current share to the user, or a current share to a team in
        which the user is an active member.
        """
        with transaction(self.db_path) as conn:
            vault = conn.execute("SELECT * FROM vaults WHERE id = ?", (vault_id,)).fetchone()
            if vault is None:
                return None
            if vault["kind"] == "personal" and vault["owner_user_id"] == user_id:
                return "write"

            access: Optional[str] = None
            if vault["kind"] == "team":
                member = conn.execute(
                    f"SELECT role FROM team_members WHERE team_id = ? AND user_id = ? AND {_MEMBER_ACTIVE}",
                    (vault["team_id"], user_id),
                ).fetchone()
                if member is not None:
                    access = "write" if member["role"] in WRITE_ROLES else "read"

            grants = conn.execute(
                f"""
                SELECT s.permissions FROM shares s
                WHERE s.source_vault_id = ? AND {_SHARE_CURRENT_S}
                  AND (
                    s.target_user_id = ?
                    OR s.target_team_id IN (
                        SELECT team_id FROM team_members
                        WHERE user_id = ? AND {_MEMBER_ACTIVE}
                    )
                  )
                """,
                (vault_id, user_id, user_id),
            ).fetchall()
            for grant in grants:
                access = _stronger(access, grant["permissions"])
            return access

    def require_vault_access(self, vault_id: str, user_id: str, write: bool = False) -> str:
        """Like vault_access() but raises.

        Raises:
            NotFoundError: Vault missing or invisible to the caller.
            AuthorizationError: Write requested with read-only access.
        """
        access = self.vault_access(vault_id, user_id)
        if access is None:
            raise NotFoundError("vault not found")
        if write and access != "write":
            raise AuthorizationError("read-only access", status_code=403)
        return access

    def list_accessible_vaults(self, user_id: str) -> List[Dict[str, Any]]:
        """Descriptors for every vault the user can currently open.

        Each vault appears once; personal beats team membership beats a
        direct user share beats a team share.
        """
        out: Dict[str, Dict[str, Any]] = {}
        with transaction(self.db_path) as conn:
            personal = conn.execute(
                "SELECT * FROM vaults WHERE kind = 'personal' AND owner_user_id = ?", (user_id,)
            ).fetchone()
            if personal is not None:
                out[personal["id"]] = {
                    "id": personal["id"],
                    "kind": "personal",
                    "source": "personal",
                    "owner_user_id": user_id,
                    "version": personal["version"],
                    "key_epoch": personal["key_epoch"],
                    "wrapped_key": personal["vault_key_wrapped"],
                    "wrap_epoch": personal["key_epoch"],
                    "wrapped_for": "user",
                    "permissions": "write",
                }

            memberships = conn.execute(
                f"""
                SELECT m.id AS member_id, m.role, v.*
                FROM team_members m JOIN vaults v ON v.team_id = m.team_id AND v.kind = 'team'
                WHERE m.user_id = ? AND {_MEMBER_ACTIVE_M}
                """,
                (user_id,),
            ).fetchall()
            for m in memberships:
                if m["id"] in out:
                    continue
                wrap = conn.execute(
                    "SELECT epoch, wrapped_key FROM member_key_wraps WHERE member_id = ? "
                    "ORDER BY epoch DESC LIMIT 1",
                    (m["member_id"],),
                ).fetchone()
                if wrap is None:
                    continue
                out[m["id"]] = {
                    "id": m["id"],
                    "kind": "team",
                    "source": "team",
                    "team_id": m["team_id"],
                    "version": m["version"],
                    "key_epoch": m["key_epoch"],
                    "wrapped_key": wrap["wrapped_key"],
                    "wrap_epoch": wrap["epoch"],
                    "wrapped_for": "user",
                    "role": m["role"],
                    "permissions": "write" if m["role"] in WRITE_ROLES else "read",
                }

            user_shares = conn.execute(
                f"""
                SELECT s.*, v.kind, v.team_id AS vault_team_id, v.owner_user_id, v.version,
                       v.key_epoch AS vault_epoch
                FROM shares s JOIN vaults v ON v.id = s.source_vault_id
                WHERE s.target_user_id = ? AND {_SHARE_CURRENT_S}
                ORDER BY s.created_at
                """,
                (user_id,),
            ).fetchall()
            team_shares = conn.execute(
                f"""
                SELECT s.*, v.kind, v.team_id AS vault_team_id, v.owner_user_id, v.version,
                       v.key_epoch AS vault_epoch
                FROM shares s JOIN vaults v ON v.id = s.source_vault_id
                WHERE s.target_team_id IN (
                    SELECT team_id FROM team_members WHERE user_id = ? AND {_MEMBER_ACTIVE}
                ) AND {_SHARE_CURRENT_S}
                ORDER BY s.created_at
                """,
                (user_id,),
            ).fetchall()

        for share in list(user_shares) + list(team_shares):
            vault_id = share["source_vault_id"]
            existing = out.get(vault_id)
            if existing is not None:
                if existing["source"] == "shared" and share["permissions"] == "write":
                    existing["permissions"] = "write"
                continue
            via_team = share["target_team_id"]
            out[vault_id] = {
                "id": vault_id,
                "kind": share["kind"],
                "source": "shared",
                "owner_user_id": share["owner_user_id"],
                "team_id": share["vault_team_id"],
                "version": share["version"],
                "key_epoch": share["vault_epoch"],
                "wrapped_key": share["wrapped_key"],
                "wrap_epoch": share["key_epoch"],
                "wrapped_for": "team" if via_team else "user",
                "via_team_id": via_team,
                "permissions": share["permissions"],
            }
        return list(out.values())

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    def insert_blob(
        self,
        vault_id: str,
        data: bytes,
        content_sha256: str,
        key_epoch: int,
        created_by: str = None,
        blob_type: str = "snapshot",
    ) -> Dict[str, Any]:
        """Append an encrypted blob. The newest insert becomes the latest.

        Raises:
            ValidationError: Hash does not match the bytes.
            StaleKeyEpochError: Blob was encrypted under an old team key.
        """
        digest = sha256_hex(data)
        if digest != (content_sha256 or "").lower():
            raise ValidationError("content hash mismatch")
        with self._lock, transaction(self.db_path) as conn:
            return self._insert_blob(conn, vault_id, data, digest, key_epoch, created_by, blob_type)

    def _insert_blob(self, conn, vault_id, data, digest, key_epoch, created_by, blob_type):
        vault = conn.execute("SELECT key_epoch FROM vaults WHERE id = ?", (vault_id,)).fetchone()
        if vault is None:
            raise NotFoundError("vault not found")
        if int(key_epoch) != vault["key_epoch"]:
            raise StaleKeyEpochError(vault_id=vault_id, expected=vault["key_epoch"], got=int(key_epoch))
        blob_id = _new_id()
        created_at = _now()
        conn.execute(
            "INSERT INTO blobs (id, vault_id, blob_type, data, content_sha256, size_bytes, key_epoch, "
            "created_by, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (blob_id, vault_id, blob_type, data, digest, len(data), key_epoch, created_by, created_at),
        )
        return {
            "id": blob_id,
            "vault_id": vault_id,
            "blob_type": blob_type,
            "content_sha256": digest,
            "size_bytes": len(data),
            "key_epoch": key_epoch,
            "created_by": created_by,
            "created_at": created_at,
        }

    def latest_blob(self, vault_id: str) -> Optional[Tuple[Dict[str, Any], bytes]]:
        with transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM blobs WHERE vault_id = ? ORDER BY seq DESC LIMIT 1", (vault_id,)
            ).fetchone()
        if row is None:
            return None
        meta = dict(row)
        data = bytes(meta.pop("data"))
        meta.pop("seq", None)
        return meta, data

    def list_blobs(self, vault_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id, vault_id, blob_type, content_sha256, size_bytes, key_epoch, created_by, created_at "
                "FROM blobs WHERE vault_id = ? ORDER BY seq DESC LIMIT ?",
                (vault_id, limit),
            ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Teams
    # ------------------------------------------------------------------

    def create_team(
        self,
        name: str,
        creator_id: str,
        wrapped_key: str,
        team_public_key: str,
    ) -> Dict[str, Any]:
        """Create a team, its vault and the creator's owner membership."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("team name is required")
        now = _now()
        team_id, vault_id, member_id = _new_id(), _new_id(), _new_id()
        with self._lock, transaction(self.db_path) as conn:
            conn.execute(
                "INSERT INTO teams (id, name, created_by, created_at) VALUES (?, ?, ?, ?)",
                (team_id, name, creator_id, now),
            )
            conn.execute(
                "INSERT INTO vaults (id, kind, team_id, team_public_key, created_at) "
                "VALUES (?, 'team', ?, ?, ?)",
                (vault_id, team_id, team_public_key, now),
            )
            conn.execute(
                "INSERT INTO team_members (id, team_id, user_id, role, invited_by, invited_at, joined_at) "
                "VALUES (?, ?, ?, 'owner', ?, ?, ?)",
                (member_id, team_id, creator_id, creator_id, now, now),
            )
            conn.execute(
                "INSERT INTO member_key_wraps (member_id, epoch, wrapped_key, created_at) VALUES (?, 1, ?, ?)",
                (member_id, wrapped_key, now),
            )
        return {"team_id": team_id, "vault_id": vault_id, "member_id": member_id, "name": name}

    def get_team(self, team_id: str) -> Optional[Dict[str, Any]]:
        with transaction(self.db_path) as conn:
            return _row(conn.execute("SELECT * FROM teams WHERE id = ?", (team_id,)).fetchone())

    def list_teams_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        """Teams with a non-revoked membership (active or invited)."""
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT t.id, t.name, m.id AS member_id, m.role, m.invited_at, m.joined_at,
                       v.id AS vault_id, v.key_epoch, v.team_public_key
                FROM team_members m
                JOIN teams t ON t.id = m.team_id
                JOIN vaults v ON v.team_id = t.id AND v.kind = 'team'
                WHERE m.user_id = ? AND m.revoked_at IS NULL
                ORDER BY t.created_at
                """,
                (user_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def get_member(self, member_id: str) -> Optional[Dict[str, Any]]:
        with transaction(self.db_path) as conn:
            return _row(conn.execute("SELECT * FROM team_members WHERE id = ?", (member_id,)).fetchone())

    def active_role(self, team_id: str, user_id: str) -> Optional[str]:
        with transaction(self.db_path) as conn:
            row = conn.execute(
                f"SELECT role FROM team_members WHERE team_id = ? AND user_id = ? AND {_MEMBER_ACTIVE}",
                (team_id, user_id),
            ).fetchone()
        return row["role"] if row else None

    def require_role(self, team_id: str, user_id: str, roles=MANAGE_ROLES) -> str:
        role = self.active_role(team_id, user_id)
        if role is None:
            raise NotFoundError("team not found")
        if role not in roles:
            raise AuthorizationError("insufficient team role", status_code=403)
        return role

    def list_members(self, team_id: str) -> List[Dict[str, Any]]:
        """All memberships with their public key and newest wrap epoch."""
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT m.*, u.username, u.public_enc_key,
                       (SELECT MAX(epoch) FROM member_key_wraps w WHERE w.member_id = m.id) AS wrap_epoch
                FROM team_members m JOIN users u ON u.id = m.user_id
                WHERE m.team_id = ?
                ORDER BY m.invited_at
                """,
                (team_id,),
            ).fetchall()
        members = []
        for r in rows:
            member = dict(r)
            if member["revoked_at"]:
                member["status"] = "revoked"
            elif member["joined_at"]:
                member["status"] = "active"
            else:
                member["status"] = "invited"
            members.append(member)
        return members

    def invite_member(
        self,
        team_id: str,
        user_id: str,
        role: str,
        invited_by: str,
        wrapped_key: str,
    ) -> Dict[str, Any]:
        """Add an invited membership carrying the team key for the current epoch."""
        if role not in ROLES or role == "owner":
            raise ValidationError(f"invalid role: {role}")
        now = _now()
        member_id = _new_id()
        with self._lock, transaction(self.db_path) as conn:
            vault = conn.execute(
                "SELECT key_epoch FROM vaults WHERE kind = 'team' AND team_id = ?", (team_id,)
            ).fetchone()
            if vault is None:
                raise NotFoundError("team not found")
            user = conn.execute("SELECT public_enc_key FROM users WHERE id = ?", (user_id,)).fetchone()
            if user is None or not user["public_enc_key"]:
                raise NotFoundError("user has no registered keys")
            existing = conn.execute(
                "SELECT id FROM team_members WHERE team_id = ? AND user_id = ? AND revoked_at IS NULL",
                (team_id, user_id),
            ).fetchone()
            if existing is not None:
                raise ConflictError("user already has a membership")
            conn.execute(
                "INSERT INTO team_members (id, team_id, user_id, role, invited_by, invited_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (member_id, team_id, user_id, role, invited_by, now),
            )
            conn.execute(
                "INSERT INTO member_key_wraps (member_id, epoch, wrapped_key, created_at) VALUES (?, ?, ?, ?)",
                (member_id, vault["key_epoch"], wrapped_key, now),
            )
        return {"member_id": member_id, "team_id": team_id, "user_id": user_id, "role": role}

    def accept_invite(self, team_id: str, user_id: str) -> str:
        with self._lock, transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT id, joined_at FROM team_members WHERE team_id = ? AND user_id = ? AND revoked_at IS NULL",
                (team_id, user_id),
            ).fetchone()
            if row is None:
                raise NotFoundError("no pending invitation")
            if row["joined_at"] is None:
                conn.execute("UPDATE team_members SET joined_at = ? WHERE id = ?", (_now(), row["id"]))
            return row["id"]

    def update_member_role(self, team_id: str, member_id: str, role: str) -> Dict[str, Any]:
        if role not in ROLES or role == "owner":
            raise ValidationError(f"invalid role: {role}")
        with self._lock, transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM team_members WHERE id = ? AND team_id = ? AND revoked_at IS NULL",
                (member_id, team_id),
            ).fetchone()
            if row is None:
                raise NotFoundError("member not found")
            if row["role"] == "owner":
                raise AuthorizationError("cannot change the owner's role", status_code=403)
            conn.execute("UPDATE team_members SET role = ? WHERE id = ?", (role, member_id))
            member = dict(row)
        member["role"] = role
        return member

    def revoke_member(self, team_id: str, member_id: str) -> Dict[str, Any]:
        """Flag a membership revoked. Key material already unwrapped is unaffected."""
        with self._lock, transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM team_members WHERE id = ? AND team_id = ? AND revoked_at IS NULL",
                (member_id, team_id),
            ).fetchone()
            if row is None:
                raise NotFoundError("member not found")
            if row["role"] == "owner":
                raise AuthorizationError("cannot remove the team owner", status_code=403)
            revoked_at = _now()
            conn.execute("UPDATE team_members SET revoked_at = ? WHERE id = ?", (revoked_at, member_id))
            member = dict(row)
        member["revoked_at"] = revoked_at
        return member

    # ------------------------------------------------------------------
    # Share grants
    # ------------------------------------------------------------------

    def create_share(
        self,
        source_vault_id: str,
        wrapped_key: str,
        permissions: str,
        created_by: str,
        target_user_id: str = None,
        target_team_id: str = None,
    ) -> Dict[str, Any]:
        """Persist a grant. Exactly one target must be given."""
        if bool(target_user_id) == bool(target_team_id):
            raise ValidationError("exactly one share target is required")
        if permissions not in PERMISSIONS:
            raise ValidationError(f"invalid permissions: {permissions}")
        share_id = _new_id()
        with self._lock, transaction(self.db_path) as conn:
            vault = conn.execute("SELECT * FROM vaults WHERE id = ?", (source_vault_id,)).fetchone()
            if vault is None:
                raise NotFoundError("vault not found")
            recipient_epoch = 0
            if target_team_id:
                team_vault = conn.execute(
                    "SELECT key_epoch FROM vaults WHERE kind = 'team' AND team_id = ?", (target_team_id,)
                ).fetchone()
                if team_vault is None:
                    raise NotFoundError("team not found")
                recipient_epoch = team_vault["key_epoch"]
            elif conn.execute("SELECT 1 FROM users WHERE id = ?", (target_user_id,)).fetchone() is None:
                raise NotFoundError("user not found")
            conn.execute(
                "INSERT INTO shares (id, source_vault_id, target_user_id, target_team_id, wrapped_key, "
                "permissions, key_epoch, recipient_epoch, created_by, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    share_id, source_vault_id, target_user_id, target_team_id, wrapped_key,
                    permissions, vault["key_epoch"], recipient_epoch, created_by, _now(),
                ),
            )
            return dict(conn.execute("SELECT * FROM shares WHERE id = ?", (share_id,)).fetchone())

    def get_share(self, share_id: str) -> Optional[Dict[str, Any]]:
        with transaction(self.db_path) as conn:
            return _row(conn.execute("SELECT * FROM shares WHERE id = ?", (share_id,)).fetchone())

    def list_team_shares(self, team_id: str) -> List[Dict[str, Any]]:
        """Current grants a team rotation must re-seal.

        Covers grants targeting the team (sealed to the team key) and grants
        of the team vault itself (carrying the team vault key).
        """
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT s.*, u.public_enc_key AS target_public_key
                FROM shares s LEFT JOIN users u ON u.id = s.target_user_id
                WHERE {_SHARE_CURRENT_S}
                  AND (
                    s.target_team_id = ?
                    OR s.source_vault_id = (SELECT id FROM vaults WHERE kind = 'team' AND team_id = ?)
                  )
                ORDER BY s.created_at
                """,
                (team_id, team_id),
            ).fetchall()
        return [dict(r) for r in rows]

    def revoke_share(self, share_id: str) -> Dict[str, Any]:
        with self._lock, transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM shares WHERE id = ? AND revoked_at IS NULL", (share_id,)).fetchone()
            if row is None:
                raise NotFoundError("share not found")
            conn.execute("UPDATE shares SET revoked_at = ? WHERE id = ?", (_now(), share_id))
            return dict(row)

    # ------------------------------------------------------------------
    # Team key rotation
    # ------------------------------------------------------------------

    def rotate_team_key(
        self,
        team_id: str,
        new_epoch: int,
        team_public_key: str,
        member_wraps: Dict[str, str],
        share_wraps: Dict[str, str],
        blob: Optional[Tuple[bytes, str]] = None,
        replaces_blob_id: Optional[str] = None,
        created_by: str = None,
    ) -> Dict[str, Any]:
        """Apply a client-built rotation atomically.

        member_wraps must cover exactly the non-revoked memberships and
        share_wraps exactly the current grants from list_team_shares().
        Older wraps stay in place; superseded grants are flagged, not deleted.

        Raises:
            ConflictError: Epoch is not current+1, the wrap sets are incomplete,
                or blob does not replace the latest snapshot (replaces_blob_id).
        """
        now = _now()
        with self._lock, transaction(self.db_path) as conn:
            vault = conn.execute(
                "SELECT * FROM vaults WHERE kind = 'team' AND team_id = ?", (team_id,)
            ).fetchone()
            if vault is None:
                raise NotFoundError("team not found")
            if new_epoch != vault["key_epoch"] + 1:
                raise ConflictError(f"expected epoch {vault['key_epoch'] + 1}, got {new_epoch}")

            live_members = {
                r["id"]
                for r in conn.execute(
                    "SELECT id FROM team_members WHERE team_id = ? AND revoked_at IS NULL", (team_id,)
                )
            }
            if set(member_wraps) != live_members:
                raise ConflictError("member wraps do not match current membership")

            live_shares = conn.execute(
                f"""
                SELECT * FROM shares
                WHERE {_SHARE_CURRENT} AND (target_team_id = ? OR source_vault_id = ?)
                """,
                (team_id, vault["id"]),
            ).fetchall()
            if set(share_wraps) != {s["id"] for s in live_shares}:
                raise ConflictError("share wraps do not match current grants")

            latest = conn.execute(
                "SELECT id FROM blobs WHERE vault_id = ? ORDER BY seq DESC LIMIT 1", (vault["id"],)
            ).fetchone()
            if latest is not None:
                if blob is None:
                    raise ConflictError("rotation must re-encrypt the current snapshot")
                if replaces_blob_id != latest["id"]:
                    raise ConflictError("snapshot changed during rotation")

            conn.execute(
                "UPDATE vaults SET key_epoch = ?, team_public_key = ?, version = version + 1 WHERE id = ?",
                (new_epoch, team_public_key, vault["id"]),
            )
            for member_id, wrapped in member_wraps.items():
                conn.execute(
                    "INSERT INTO member_key_wraps (member_id, epoch, wrapped_key, created_at) VALUES (?, ?, ?, ?)",
                    (member_id, new_epoch, wrapped, now),
                )

            new_shares = {}
            for share in live_shares:
                new_id = _new_id()
                key_epoch = new_epoch if share["source_vault_id"] == vault["id"] else share["key_epoch"]
                recipient_epoch = new_epoch if share["target_team_id"] == team_id else share["recipient_epoch"]
                conn.execute("UPDATE shares SET superseded_at = ? WHERE id = ?", (now, share["id"]))
                conn.execute(
                    "INSERT INTO shares (id, source_vault_id, target_user_id, target_team_id, wrapped_key, "
                    "permissions, key_epoch, recipient_epoch, created_by, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        new_id, share["source_vault_id"], share["target_user_id"], share["target_team_id"],
                        share_wraps[share["id"]], share["permissions"], key_epoch, recipient_epoch,
                        created_by, now,
                    ),
                )
                new_shares[share["id"]] = new_id

            blob_meta = None
            if blob is not None:
                data, digest = blob
                if sha256_hex(data) != (digest or "").lower():
                    raise ValidationError("content hash mismatch")
                blob_meta = self._insert_blob(conn, vault["id"], data, sha256_hex(data), new_epoch, created_by, "snapshot")

        logger.info("Team %s key rotated to epoch %d", team_id, new_epoch)
        return {
            "team_id": team_id,
            "vault_id": vault["id"],
            "key_epoch": new_epoch,
            "superseded_shares": new_shares,
            "blob": blob_meta,
        }

    # ------------------------------------------------------------------
    # Event filtering
    # ------------------------------------------------------------------

    def can_receive_event(self, user_id: str, event: SyncEvent) -> bool:
        """Whether user_id may see event right now."""
        if event.is_heartbeat:
            return True
        if event.member_id:
            member = self.get_member(event.member_id)
            if member is not None and member["user_id"] == user_id:
                return True
        if event.vault_id:
            return self.vault_access(event.vault_id, user_id) is not None
        if event.team_id:
            return self.active_role(event.team_id, user_id) is not None
        return event.actor_user_id == user_id

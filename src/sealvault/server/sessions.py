# SealVault - Session Guard
#
# Bearer tokens are opaque to clients but self-authenticating for the
# server:
#
#   v1.<session_id>.<user_id>.<expires_at>.<hmac_sha256 hex>
#
# A token is accepted only if
#   1. the HMAC verifies (constant-time compare),
#   2. it has not expired, and
#   3. the session record exists, is not revoked, and belongs to user_id.
#
# Revocation flips a flag on the session record; the token itself stays
# cryptographically valid, so step 3 is what actually ends a session.
# Checks are point-in-time: a request already past validation completes.

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ..core.audit_log import EventSeverity, EventType, log_security_event
from ..exceptions import AuthorizationError
from .store import ServerStore

logger = logging.getLogger(__name__)

TOKEN_VERSION = "v1"


@dataclass(frozen=True)
class SessionContext:
    """Validated caller identity attached to a request."""
    session_id: str
    user_id: str
    expires_at: int

    @property
    def audit_context(self) -> Dict[str, str]:
        return {"user_id": self.user_id, "session_id": self.session_id}


class SessionGuard:
    """Issues, validates and revokes bearer sessions."""

    def __init__(
        self,
        store: ServerStore,
        secret: bytes,
        ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("session secret must not be empty")
        self.store = store
        self._secret = secret
        self._ttl = ttl_seconds
        self._clock = clock

    def _sign(self, payload: str) -> str:
        return hmac.new(self._secret, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def issue(self, user_id: str) -> str:
        """Create a session record and return its bearer token."""
        expires_at = int(self._clock()) + self._ttl
        session_id = self.store.create_session(user_id, expires_at)
        payload = f"{TOKEN_VERSION}.{session_id}.{user_id}.{expires_at}"
        log_security_event(
            EventType.SESSION_ISSUED,
            EventSeverity.INFO,
            "Session issued",
            details={"session_id": session_id, "user_id": user_id},
        )
        return f"{payload}.{self._sign(payload)}"

    def validate(self, token: Optional[str]) -> SessionContext:
        """Return the session context for a token or raise AuthorizationError."""
        if not token:
            raise AuthorizationError("missing bearer token")

        parts = token.split(".")
        if len(parts) != 5 or parts[0] != TOKEN_VERSION:
            raise AuthorizationError("malformed bearer token")
        version, session_id, user_id, expires_raw, signature = parts
        payload = f"{version}.{session_id}.{user_id}.{expires_raw}"
        if not hmac.compare_digest(self._sign(payload), signature):
            raise AuthorizationError("invalid bearer token")

        try:
            expires_at = int(expires_raw)
        except ValueError:
            raise AuthorizationError("malformed bearer token")
        if expires_at <= int(self._clock()):
            raise AuthorizationError("session expired")

        record = self.store.get_session(session_id)
        if record is None or record["user_id"] != user_id:
            raise AuthorizationError("unknown session")
        if record["revoked_at"]:
            raise AuthorizationError("session revoked")
        return SessionContext(session_id=session_id, user_id=user_id, expires_at=expires_at)

    def revoke(self, session_id: str) -> bool:
        revoked = self.store.revoke_session(session_id)
        if revoked:
            log_security_event(
                EventType.SESSION_REVOKED,
                EventSeverity.INFO,
                "Session revoked",
                details={"session_id": session_id},
            )
        return revoked

    def revoke_all(self, user_id: str) -> List[str]:
        session_ids = self.store.revoke_user_sessions(user_id)
        if session_ids:
            log_security_event(
                EventType.SESSION_REVOKED,
                EventSeverity.INVESTIGATE,
                f"All sessions revoked for user ({len(session_ids)})",
                details={"user_id": user_id, "count": len(session_ids)},
            )
        return session_ids


class Authenticator:
    """Verifies login credentials against an external directory.

    Returns profile fields ({"username", "display_name", "email"}) for a
    valid login or None. Subclasses plug in a real directory service.
    """

    def authenticate(self, username: str, password: str) -> Optional[dict]:
        return None


class DevAuthenticator(Authenticator):
    """Accepts any non-empty username and password. Local development only."""

    def authenticate(self, username: str, password: str) -> Optional[dict]:
        username = (username or "").strip()
        if not username or not password:
            return None
        return {"username": username, "display_name": username, "email": None}

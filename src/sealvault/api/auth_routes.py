# SealVault - Auth, Identity Key and User Directory Endpoints
#
# The server stores public keys and the passphrase-encrypted private key
# bundle. It never sees the passphrase or any private key.

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..core.audit_log import EventSeverity, EventType, log_security_event
from ..crypto.aead import b64decode
from ..crypto.identity import EncryptedPrivateKeys
from ..crypto.signing import registration_message, verify_signature
from ..exceptions import ValidationError
from ..server.sessions import SessionContext
from ..sync.events import SyncEventKind, make_event
from .deps import ServerContext, get_server
from .security import require_session

router = APIRouter(tags=["auth"])

RESET_CONFIRMATION = "RESET"


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., min_length=1)


class RegisterKeysRequest(BaseModel):
    public_sign_key: str
    public_enc_key: str
    encrypted_private_key: str
    enc_key_signature: str


class ResetKeysRequest(BaseModel):
    confirm: str


def _public_user(user: dict) -> dict:
    return {
        "id": user["id"],
        "username": user["username"],
        "display_name": user["display_name"],
        "public_enc_key": user["public_enc_key"],
    }


@router.post("/auth/login")
async def login(body: LoginRequest, server: ServerContext = Depends(get_server)):
    """Authenticate against the directory and issue a bearer session."""
    profile = server.authenticator.authenticate(body.username, body.password)
    if profile is None:
        log_security_event(
            EventType.AUTH_FAILED,
            EventSeverity.INVESTIGATE,
            "Login rejected",
            details={"username": body.username},
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid credentials")

    user = server.store.ensure_user(
        profile["username"], display_name=profile.get("display_name"), email=profile.get("email")
    )
    token = server.guard.issue(user["id"])
    return {
        "token": token,
        "user": _public_user(user),
        "has_keys": bool(user["public_enc_key"]),
    }


@router.post("/auth/logout")
async def logout(
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    server.guard.revoke(session.session_id)
    server.broker.close_session(session.session_id)
    return {"success": True}


@router.get("/me")
async def me(
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    user = server.store.get_user(session.user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
    return {
        **_public_user(user),
        "email": user["email"],
        "has_keys": bool(user["public_enc_key"]),
        "keys_reset_at": user["keys_reset_at"],
    }


@router.post("/keys/register")
async def register_keys(
    body: RegisterKeysRequest,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    """
    Store a new identity.

    The signing key must sign the encryption key and the bundle must parse
    as a v1 encrypted private key bundle; the server cannot check more.
    """
    sign_pk = b64decode(body.public_sign_key, "public_sign_key")
    enc_pk = b64decode(body.public_enc_key, "public_enc_key")
    signature = b64decode(body.enc_key_signature, "enc_key_signature")
    if len(sign_pk) != 32 or len(enc_pk) != 32:
        raise ValidationError("public keys must be 32 bytes")
    if not verify_signature(sign_pk, signature, registration_message(enc_pk)):
        raise ValidationError("encryption key signature does not verify")
    EncryptedPrivateKeys.from_json(body.encrypted_private_key)

    server.store.register_keys(
        session.user_id,
        body.public_sign_key,
        body.public_enc_key,
        body.encrypted_private_key,
        body.enc_key_signature,
    )
    log_security_event(
        EventType.KEYS_REGISTERED,
        EventSeverity.INFO,
        "Identity keys registered",
        details={"user_id": session.user_id},
        user_context=session.audit_context,
    )
    return {"success": True}


@router.get("/keys/me")
async def get_my_keys(
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    keys = server.store.get_keys(session.user_id)
    if keys is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no keys registered")
    return keys


@router.post("/keys/reset")
async def reset_keys(
    body: ResetKeysRequest,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    """
    Discard the server-held identity.

    Destructive: every vault key wrapped for the old identity becomes
    permanently unrecoverable. Requires confirm == "RESET".
    """
    if body.confirm != RESET_CONFIRMATION:
        raise ValidationError('confirmation must be "RESET"')
    server.store.reset_keys(session.user_id)
    log_security_event(
        EventType.KEYS_RESET,
        EventSeverity.ALERT,
        "Identity keys reset; prior wraps are unrecoverable",
        details={"user_id": session.user_id},
        user_context=session.audit_context,
    )
    server.publish(make_event(SyncEventKind.KEYS_RESET, actor_user_id=session.user_id))
    return {"success": True}


@router.get("/users/lookup")
async def lookup_user(
    username: str = Query(..., min_length=1),
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    user = server.store.lookup_user(username)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
    return _public_user(user)


@router.get("/users/{user_id}/public-key")
async def get_public_key(
    user_id: str,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    public_key: Optional[str] = server.store.get_public_enc_key(user_id)
    if not public_key:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no public key")
    return {"user_id": user_id, "public_enc_key": public_key}

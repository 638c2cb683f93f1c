# SealVault - Team Endpoints
#
# Membership lifecycle: invited -> active (joined) -> revoked.
# Only active members get live access. Every membership carries the team
# key sealed to the member's identity, one row per key epoch.

from typing import Dict, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from ..core.audit_log import EventSeverity, EventType, log_security_event
from ..crypto.aead import b64decode
from ..exceptions import NotFoundError, ValidationError
from ..server.sessions import SessionContext
from ..server.store import MANAGE_ROLES, ROLES
from ..sync.events import SyncEventKind, make_event
from .deps import ServerContext, get_server
from .security import require_session

router = APIRouter(prefix="/teams", tags=["teams"])

_ROLE_PATTERN = "^(" + "|".join(r for r in ROLES if r != "owner") + ")$"


class CreateTeamRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    wrapped_key: str = Field(..., min_length=1)
    team_public_key: str = Field(..., min_length=1)


class InviteRequest(BaseModel):
    user_id: str
    role: str = Field("viewer", pattern=_ROLE_PATTERN)
    wrapped_key: str = Field(..., min_length=1)


class RoleRequest(BaseModel):
    role: str = Field(..., pattern=_ROLE_PATTERN)


class RotateRequest(BaseModel):
    new_epoch: int = Field(..., ge=2)
    team_public_key: str
    member_wraps: Dict[str, str]
    share_wraps: Dict[str, str] = Field(default_factory=dict)
    blob_b64: Optional[str] = None
    content_sha256: Optional[str] = None
    replaces_blob_id: Optional[str] = None


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_team(
    body: CreateTeamRequest,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    created = server.store.create_team(body.name, session.user_id, body.wrapped_key, body.team_public_key)
    log_security_event(
        EventType.TEAM_CREATED,
        EventSeverity.INFO,
        "Team created",
        details={"team_id": created["team_id"], "vault_id": created["vault_id"]},
        user_context=session.audit_context,
    )
    server.publish(
        make_event(
            SyncEventKind.TEAM_CREATE,
            actor_user_id=session.user_id,
            team_id=created["team_id"],
            vault_id=created["vault_id"],
        )
    )
    return created


@router.get("")
async def list_teams(
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    return {"teams": server.store.list_teams_for_user(session.user_id)}


@router.get("/{team_id}/public-key")
async def get_team_public_key(
    team_id: str,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    """Current team encryption key, for sealing grants to the team."""
    vault = server.store.get_team_vault(team_id)
    if vault is None or not vault["team_public_key"]:
        raise NotFoundError("team not found")
    return {"team_id": team_id, "key_epoch": vault["key_epoch"], "team_public_key": vault["team_public_key"]}


@router.get("/{team_id}/members")
async def list_members(
    team_id: str,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    server.store.require_role(team_id, session.user_id, roles=ROLES)
    return {"members": server.store.list_members(team_id)}


@router.post("/{team_id}/invite", status_code=status.HTTP_201_CREATED)
async def invite_member(
    team_id: str,
    body: InviteRequest,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    server.store.require_role(team_id, session.user_id, roles=MANAGE_ROLES)
    member = server.store.invite_member(team_id, body.user_id, body.role, session.user_id, body.wrapped_key)
    log_security_event(
        EventType.TEAM_INVITE,
        EventSeverity.INFO,
        "Member invited",
        details={"team_id": team_id, "member_id": member["member_id"], "role": body.role},
        user_context=session.audit_context,
    )
    server.publish(
        make_event(
            SyncEventKind.TEAM_INVITE,
            actor_user_id=session.user_id,
            team_id=team_id,
            member_id=member["member_id"],
        )
    )
    return member


@router.post("/{team_id}/accept")
async def accept_invite(
    team_id: str,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    member_id = server.store.accept_invite(team_id, session.user_id)
    log_security_event(
        EventType.TEAM_INVITE_ACCEPTED,
        EventSeverity.INFO,
        "Invitation accepted",
        details={"team_id": team_id, "member_id": member_id},
        user_context=session.audit_context,
    )
    server.publish(
        make_event(
            SyncEventKind.TEAM_INVITE_ACCEPT,
            actor_user_id=session.user_id,
            team_id=team_id,
            member_id=member_id,
        )
    )
    return {"member_id": member_id, "team_id": team_id}


@router.post("/{team_id}/members/{member_id}/role")
async def update_role(
    team_id: str,
    member_id: str,
    body: RoleRequest,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    server.store.require_role(team_id, session.user_id, roles=MANAGE_ROLES)
    member = server.store.update_member_role(team_id, member_id, body.role)
    log_security_event(
        EventType.TEAM_ROLE_UPDATED,
        EventSeverity.INFO,
        "Member role changed",
        details={"team_id": team_id, "member_id": member_id, "role": body.role},
        user_context=session.audit_context,
    )
    server.publish(
        make_event(
            SyncEventKind.TEAM_ROLE_UPDATE,
            actor_user_id=session.user_id,
            team_id=team_id,
            member_id=member_id,
        )
    )
    return {"member_id": member_id, "role": member["role"]}


@router.delete("/{team_id}/members/{member_id}")
async def remove_member(
    team_id: str,
    member_id: str,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    """
    Revoke a membership.

    Key material the member already unwrapped is not invalidated; run
    POST /teams/{id}/rotate for that.
    """
    server.store.require_role(team_id, session.user_id, roles=MANAGE_ROLES)
    member = server.store.revoke_member(team_id, member_id)
    log_security_event(
        EventType.TEAM_MEMBER_REMOVED,
        EventSeverity.ALERT,
        "Member removed from team",
        details={"team_id": team_id, "member_id": member_id},
        user_context=session.audit_context,
    )
    server.publish(
        make_event(
            SyncEventKind.TEAM_MEMBER_REMOVE,
            actor_user_id=session.user_id,
            team_id=team_id,
            member_id=member_id,
        )
    )
    return {"member_id": member_id, "revoked_at": member["revoked_at"]}


@router.get("/{team_id}/shares")
async def list_team_shares(
    team_id: str,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    """Grants a rotation must re-seal, with each user target's public key."""
    server.store.require_role(team_id, session.user_id, roles=MANAGE_ROLES)
    return {"shares": server.store.list_team_shares(team_id)}


@router.post("/{team_id}/rotate")
async def rotate_key(
    team_id: str,
    body: RotateRequest,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    server.store.require_role(team_id, session.user_id, roles=MANAGE_ROLES)
    blob = None
    if body.blob_b64 is not None:
        if not body.content_sha256:
            raise ValidationError("content_sha256 is required with blob_b64")
        blob = (b64decode(body.blob_b64, "blob_b64"), body.content_sha256)

    result = server.store.rotate_team_key(
        team_id,
        body.new_epoch,
        body.team_public_key,
        body.member_wraps,
        body.share_wraps,
        blob=blob,
        replaces_blob_id=body.replaces_blob_id,
        created_by=session.user_id,
    )
    log_security_event(
        EventType.TEAM_KEY_ROTATED,
        EventSeverity.ALERT,
        "Team key rotated",
        details={"team_id": team_id, "key_epoch": body.new_epoch},
        user_context=session.audit_context,
    )
    server.publish(
        make_event(
            SyncEventKind.TEAM_KEY_ROTATE,
            actor_user_id=session.user_id,
            team_id=team_id,
            vault_id=result["vault_id"],
        )
    )
    return result

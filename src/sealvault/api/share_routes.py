# SealVault - Share Grant Endpoints
#
# A grant hands out an extra wrap of an existing vault key. It never changes
# the key itself and the server never sees it unwrapped.

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, model_validator

from ..core.audit_log import EventSeverity, EventType, log_security_event
from ..server.sessions import SessionContext
from ..sync.events import SyncEventKind, make_event
from .deps import ServerContext, get_server
from .security import require_session

router = APIRouter(prefix="/shares", tags=["shares"])


class CreateShareRequest(BaseModel):
    source_vault_id: str
    target_user_id: Optional[str] = None
    target_team_id: Optional[str] = None
    wrapped_key: str = Field(..., min_length=1)
    permissions: str = Field("read", pattern="^(read|write)$")

    @model_validator(mode="after")
    def _one_target(self):
        if bool(self.target_user_id) == bool(self.target_team_id):
            raise ValueError("exactly one of target_user_id / target_team_id is required")
        return self


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_share(
    body: CreateShareRequest,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    """Grant a user or team access to a vault the caller can write."""
    server.store.require_vault_access(body.source_vault_id, session.user_id, write=True)
    share = server.store.create_share(
        body.source_vault_id,
        body.wrapped_key,
        body.permissions,
        session.user_id,
        target_user_id=body.target_user_id,
        target_team_id=body.target_team_id,
    )
    log_security_event(
        EventType.VAULT_SHARED,
        EventSeverity.INFO,
        "Vault shared",
        details={
            "share_id": share["id"],
            "vault_id": body.source_vault_id,
            "target_user_id": body.target_user_id,
            "target_team_id": body.target_team_id,
            "permissions": body.permissions,
        },
        user_context=session.audit_context,
    )
    server.publish(
        make_event(SyncEventKind.VAULT_SHARE, actor_user_id=session.user_id, vault_id=body.source_vault_id)
    )
    return share


@router.delete("/{share_id}")
async def revoke_share(
    share_id: str,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    share = server.store.get_share(share_id)
    if share is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="share not found")
    if share["created_by"] != session.user_id:
        server.store.require_vault_access(share["source_vault_id"], session.user_id, write=True)
    server.store.revoke_share(share_id)
    log_security_event(
        EventType.VAULT_SHARED,
        EventSeverity.INVESTIGATE,
        "Share revoked",
        details={"share_id": share_id, "vault_id": share["source_vault_id"]},
        user_context=session.audit_context,
    )
    server.publish(
        make_event(SyncEventKind.VAULT_SHARE, actor_user_id=session.user_id, vault_id=share["source_vault_id"])
    )
    return {"success": True}

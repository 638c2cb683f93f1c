# SealVault - Vault and Blob Endpoints
#
# Vaults hold only a wrapped key and an append-only list of encrypted
# snapshot blobs. Uploads declare the key epoch they were encrypted under;
# a stale epoch is rejected so a rotated team vault never regresses.

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from ..core.audit_log import EventSeverity, EventType, log_security_event
from ..crypto.aead import b64decode
from ..server.sessions import SessionContext
from ..sync.events import SyncEventKind, make_event
from .deps import ServerContext, get_server
from .security import require_session

router = APIRouter(prefix="/vaults", tags=["vaults"])


class CreateVaultRequest(BaseModel):
    kind: str = Field("personal", pattern="^personal$")
    wrapped_key: str = Field(..., min_length=1)


class UploadBlobRequest(BaseModel):
    data_b64: str
    content_sha256: str = Field(..., min_length=64, max_length=64)
    key_epoch: int = Field(1, ge=1)
    blob_type: str = "snapshot"


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_vault(
    body: CreateVaultRequest,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    """Create the caller's personal vault. Team vaults come from POST /teams."""
    vault = server.store.create_personal_vault(session.user_id, body.wrapped_key)
    log_security_event(
        EventType.VAULT_CREATED,
        EventSeverity.INFO,
        "Personal vault created",
        details={"vault_id": vault["id"], "user_id": session.user_id},
        user_context=session.audit_context,
    )
    server.publish(
        make_event(SyncEventKind.VAULT_CREATE, actor_user_id=session.user_id, vault_id=vault["id"])
    )
    return {"id": vault["id"], "kind": vault["kind"], "version": vault["version"], "key_epoch": vault["key_epoch"]}


@router.get("")
async def list_vaults(
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    return {"vaults": server.store.list_accessible_vaults(session.user_id)}


@router.get("/{vault_id}")
async def get_vault(
    vault_id: str,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    for descriptor in server.store.list_accessible_vaults(session.user_id):
        if descriptor["id"] == vault_id:
            return descriptor
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="vault not found")


@router.post("/{vault_id}/blobs", status_code=status.HTTP_201_CREATED)
async def upload_blob(
    vault_id: str,
    body: UploadBlobRequest,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    """Append an encrypted snapshot. Requires write access."""
    server.store.require_vault_access(vault_id, session.user_id, write=True)
    data = b64decode(body.data_b64, "data_b64")
    if len(data) > server.settings.max_blob_bytes:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="blob too large")

    meta = server.store.insert_blob(
        vault_id,
        data,
        body.content_sha256,
        body.key_epoch,
        created_by=session.user_id,
        blob_type=body.blob_type,
    )
    log_security_event(
        EventType.BLOB_UPLOADED,
        EventSeverity.INFO,
        "Snapshot blob uploaded",
        details={"vault_id": vault_id, "blob_id": meta["id"], "size_bytes": meta["size_bytes"]},
        user_context=session.audit_context,
    )
    server.publish(make_event(SyncEventKind.BLOB_UPLOAD, actor_user_id=session.user_id, vault_id=vault_id))
    return meta


@router.get("/{vault_id}/blobs")
async def list_blobs(
    vault_id: str,
    limit: int = Query(50, ge=1, le=500),
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    server.store.require_vault_access(vault_id, session.user_id)
    return {"blobs": server.store.list_blobs(vault_id, limit=limit)}


@router.get("/{vault_id}/blobs/latest")
async def latest_blob(
    vault_id: str,
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    """
    Latest blob bytes, or 204 when the vault has never been written.

    Metadata travels in X-Blob-Id, X-Content-SHA256 and X-Key-Epoch headers.
    """
    server.store.require_vault_access(vault_id, session.user_id)
    found: Optional[tuple] = server.store.latest_blob(vault_id)
    if found is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    meta, data = found
    return Response(
        content=data,
        media_type="application/octet-stream",
        headers={
            "X-Blob-Id": meta["id"],
            "X-Content-SHA256": meta["content_sha256"],
            "X-Key-Epoch": str(meta["key_epoch"]),
            "Cache-Control": "no-store",
        },
    )

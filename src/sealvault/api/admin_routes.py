# SealVault - Admin Endpoints
#
# Read-only view of the audit trail for server admins. The admin flag is
# set out of band (`sealvault grant-admin <username>`); team roles never
# confer it.

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..core.audit_log import EventSeverity, EventType, get_audit_logger, log_security_event
from ..server.sessions import SessionContext
from .deps import ServerContext, get_server
from .security import require_session

router = APIRouter(prefix="/admin", tags=["admin"])


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@router.get("/audit")
async def list_audit_events(
    actor_id: Optional[str] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(500, ge=1, le=5000),
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    """
    Audit events, newest first.

    Query params:
        actor_id: Only events performed by this user
        since / until: ISO-8601 bounds (naive values are taken as UTC)
    """
    if not server.store.is_admin(session.user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin access required")

    items = get_audit_logger().query_events(
        start_time=_aware(since),
        end_time=_aware(until),
        actor_user_id=actor_id,
        limit=limit,
    )
    log_security_event(
        EventType.AUDIT_QUERIED,
        EventSeverity.INFO,
        "Audit log queried",
        details={"actor_id": actor_id, "results": len(items)},
        user_context=session.audit_context,
    )
    return {"items": list(reversed(items))}

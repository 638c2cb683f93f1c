# SealVault - API Security
#
# Every protected endpoint depends on require_session(). The bearer token is
# read from the Authorization header, or from the `token` query parameter
# for EventSource clients that cannot set headers.

from typing import Optional

from fastapi import Header, HTTPException, Query, Request, status

from ..core.audit_log import EventSeverity, EventType, log_security_event
from ..exceptions import AuthorizationError
from ..server.sessions import SessionContext
from .deps import get_server


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def require_session(
    request: Request,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
) -> SessionContext:
    """
    FastAPI dependency that validates the caller's session.

    Usage in routes:
        @router.get("/me")
        async def me(session: SessionContext = Depends(require_session)): ...

    Raises:
        HTTPException: 401 if the token is missing, invalid, expired or
            its session was revoked.
    """
    raw = extract_bearer(authorization) or token
    try:
        return get_server(request).guard.validate(raw)
    except AuthorizationError as exc:
        log_security_event(
            EventType.AUTH_FAILED,
            EventSeverity.INVESTIGATE,
            "Rejected bearer token",
            details={"reason": str(exc), "path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        )

# SealVault - FastAPI Application
#
# Zero-knowledge vault server: stores public keys, wrapped vault keys and
# encrypted snapshot blobs, and fans out access-filtered change events.

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import Settings, get_settings
from ..exceptions import (
    AuthorizationError,
    ConflictError,
    CredentialError,
    NotFoundError,
    SealVaultError,
    StaleKeyEpochError,
    UnsupportedVersionError,
    ValidationError,
)
from ..server.sessions import Authenticator, DevAuthenticator, SessionGuard
from ..server.store import ServerStore
from ..sync.broker import SyncEventBroker
from .admin_routes import router as admin_router
from .auth_routes import router as auth_router
from .deps import ServerContext
from .share_routes import router as share_router
from .sync_routes import router as sync_router
from .team_routes import router as team_router
from .vault_routes import router as vault_router

logger = logging.getLogger(__name__)


def _error_response(exc: SealVaultError) -> JSONResponse:
    """Map domain exceptions onto HTTP status codes."""
    if isinstance(exc, StaleKeyEpochError):
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "code": "stale_key_epoch", "expected": exc.expected},
        )
    if isinstance(exc, AuthorizationError):
        code = "forbidden" if exc.status_code == 403 else "unauthorized"
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "code": code})
    if isinstance(exc, CredentialError):
        return JSONResponse(status_code=401, content={"detail": str(exc), "code": "unauthorized"})
    if isinstance(exc, (ValidationError, UnsupportedVersionError)):
        return JSONResponse(status_code=400, content={"detail": str(exc), "code": "validation"})
    if isinstance(exc, NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc), "code": "not_found"})
    if isinstance(exc, ConflictError):
        return JSONResponse(status_code=409, content={"detail": str(exc), "code": "conflict"})
    logger.error("Unhandled SealVault error: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "internal error", "code": "internal"})


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ServerStore] = None,
    authenticator: Optional[Authenticator] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Defaults to the environment-derived global settings.
        store: Defaults to a ServerStore at settings.db_path.
        authenticator: Defaults to DevAuthenticator when settings.dev_login,
            otherwise a directory stub that rejects every login.
    """
    settings = settings or get_settings()
    store = store or ServerStore(settings.db_path)
    if authenticator is None:
        authenticator = DevAuthenticator() if settings.dev_login else Authenticator()
        if settings.dev_login:
            logger.warning("Development login enabled: any username/password is accepted")

    broker = SyncEventBroker(
        access_check=store.can_receive_event,
        heartbeat_seconds=settings.heartbeat_seconds,
    )
    context = ServerContext(
        settings=settings,
        store=store,
        guard=SessionGuard(store, settings.token_secret, settings.token_ttl_seconds),
        broker=broker,
        authenticator=authenticator,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("SealVault API starting")
        yield
        broker.close()
        logger.info("SealVault API stopped")

    app = FastAPI(
        title="SealVault API",
        description="Zero-knowledge password vault sync server",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.server = context

    @app.exception_handler(SealVaultError)
    async def sealvault_error_handler(request: Request, exc: SealVaultError):
        return _error_response(exc)

    app.include_router(auth_router)
    app.include_router(vault_router)
    app.include_router(team_router)
    app.include_router(share_router)
    app.include_router(sync_router)
    app.include_router(admin_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__, "subscribers": broker.subscriber_count}

    return app


def start_api_server(host: str = "127.0.0.1", port: int = 8000, settings: Optional[Settings] = None):
    """
    Start the API server.

    Args:
        host: Host to bind to (default: localhost only)
        port: Port to listen on
    """
    app = create_app(settings)
    uvicorn.run(app, host=host, port=port, log_level="info")

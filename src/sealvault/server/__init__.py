# SealVault - Server Module
#
# Storage, access control and session validation for the sync server.

from .sessions import Authenticator, DevAuthenticator, SessionContext, SessionGuard
from .store import ServerStore

__all__ = [
    "ServerStore",
    "SessionGuard",
    "SessionContext",
    "Authenticator",
    "DevAuthenticator",
]

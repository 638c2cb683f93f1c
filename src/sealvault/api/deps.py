# SealVault - API Dependencies
#
# Server-wide collaborators live on app.state.server so routers stay free of
# module globals and tests can build isolated apps.

from dataclasses import dataclass

from fastapi import Request

from ..config import Settings
from ..server.sessions import Authenticator, SessionGuard
from ..server.store import ServerStore
from ..sync.broker import SyncEventBroker
from ..sync.events import SyncEvent


@dataclass
class ServerContext:
    settings: Settings
    store: ServerStore
    guard: SessionGuard
    broker: SyncEventBroker
    authenticator: Authenticator

    def publish(self, event: SyncEvent) -> None:
        self.broker.publish(event)


def get_server(request: Request) -> ServerContext:
    return request.app.state.server

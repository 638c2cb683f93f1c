# SealVault - Sync Module
#
# Server-side event broker and client-side reconnecting event stream.

from .broker import Subscription, SyncEventBroker
from .client import StreamState, SyncEventStream, backoff_delay
from .events import SyncEvent, SyncEventKind, heartbeat_event, make_event, parse_event

__all__ = [
    "SyncEvent",
    "SyncEventKind",
    "make_event",
    "heartbeat_event",
    "parse_event",
    "SyncEventBroker",
    "Subscription",
    "SyncEventStream",
    "StreamState",
    "backoff_delay",
]

# SealVault - Sync Events
#
# Change notifications carry only identifiers, never vault contents.
# Wire shape: {"t": <ms>, "type": "...", "vault_id"?, "team_id"?,
#              "member_id"?, "actor_user_id"?}

import time
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ValidationError


class SyncEventKind(str, Enum):
    VAULT_CREATE = "vault_create"
    BLOB_UPLOAD = "blob_upload"
    TEAM_CREATE = "team_create"
    TEAM_INVITE = "team_invite"
    TEAM_INVITE_ACCEPT = "team_invite_accept"
    TEAM_UPDATE = "team_update"
    TEAM_ROLE_UPDATE = "team_role_update"
    TEAM_MEMBER_REMOVE = "team_member_remove"
    TEAM_KEY_ROTATE = "team_key_rotate"
    VAULT_SHARE = "vault_share"
    KEYS_RESET = "keys_reset"
    HEARTBEAT = "heartbeat"


class SyncEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    t: int
    type: SyncEventKind
    vault_id: Optional[str] = None
    team_id: Optional[str] = None
    member_id: Optional[str] = None
    actor_user_id: Optional[str] = None

    @property
    def is_heartbeat(self) -> bool:
        return self.type == SyncEventKind.HEARTBEAT

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def now_ms() -> int:
    return int(time.time() * 1000)


def make_event(kind: SyncEventKind, actor_user_id: Optional[str] = None, **resource) -> SyncEvent:
    """Build an event stamped with the current time."""
    return SyncEvent(t=now_ms(), type=kind, actor_user_id=actor_user_id, **resource)


def heartbeat_event() -> SyncEvent:
    return SyncEvent(t=now_ms(), type=SyncEventKind.HEARTBEAT)


def parse_event(obj: Any) -> SyncEvent:
    """Validate an inbound event payload.

    Raises:
        ValidationError: Payload is not a known event shape.
    """
    try:
        return SyncEvent.model_validate(obj)
    except PydanticValidationError as exc:
        raise ValidationError(f"sync event failed validation: {exc.error_count()} error(s)") from exc

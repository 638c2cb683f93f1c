# SealVault - Sync Event Stream Endpoint
#
# Server-sent events: one `data: <json>\n\n` frame per event. The stream
# starts with an SSE comment so clients know the subscription is live.

import json
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ..server.sessions import SessionContext
from .deps import ServerContext, get_server
from .security import require_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.get("/events")
async def sync_events(
    session: SessionContext = Depends(require_session),
    server: ServerContext = Depends(get_server),
):
    subscription = server.broker.subscribe(session.user_id, session.session_id)

    async def sse_generator():
        try:
            yield ": connected\n\n"
            async for event in subscription.events():
                yield f"data: {json.dumps(event.to_wire(), separators=(',', ':'))}\n\n"
        finally:
            server.broker.unsubscribe(subscription)

    return StreamingResponse(
        sse_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )

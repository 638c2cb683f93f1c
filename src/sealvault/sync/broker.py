# SealVault - Sync Event Broker (server side)
#
# Fan-out of change notifications to every connected client session.
#
# Design:
#   - Explicit registry: subscribe / unsubscribe / publish / close
#   - One bounded asyncio.Queue + one cancellation Event per subscriber;
#     publish() never awaits, so a slow subscriber cannot stall others
#   - A full queue cancels only that subscriber ("lagged"); the client
#     reconnects and re-pulls
#   - Authorization is re-checked by each subscriber, per event, with the
#     same access check used for direct reads; denied events are dropped
#     for that subscriber only
#   - Heartbeats are produced by the subscriber itself on a fixed interval
#     measured from its last delivered frame, so they do not depend on
#     real traffic or on what the access check lets through

import asyncio
import logging
from typing import AsyncIterator, Callable, Dict, List, Optional
from uuid import uuid4

from .events import SyncEvent, heartbeat_event

logger = logging.getLogger(__name__)

AccessCheck = Callable[[str, SyncEvent], bool]

DEFAULT_QUEUE_SIZE = 256


class Subscription:
    """One connected client stream."""

    def __init__(
        self,
        user_id: str,
        access_check: AccessCheck,
        heartbeat_seconds: float,
        session_id: Optional[str] = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self.id = str(uuid4())
        self.user_id = user_id
        self.session_id = session_id
        self.close_reason: Optional[str] = None
        self.delivered = 0
        self.dropped = 0
        self._access_check = access_check
        self._heartbeat_seconds = heartbeat_seconds
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self, reason: str = "closed") -> None:
        if not self._cancelled.is_set():
            self.close_reason = reason
            self._cancelled.set()

    def offer(self, event: SyncEvent) -> bool:
        """Enqueue without waiting. Cancels this subscriber on overflow."""
        if self.cancelled:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            logger.warning("Subscriber %s lagged; closing its stream", self.id)
            self.cancel("lagged")
            return False

    def _allowed(self, event: SyncEvent) -> bool:
        if event.is_heartbeat:
            return True
        try:
            return bool(self._access_check(self.user_id, event))
        except Exception:
            logger.exception("Access check failed for subscriber %s; dropping event", self.id)
            return False

    async def _next(self, timeout: Optional[float]):
        get = asyncio.ensure_future(self._queue.get())
        stop = asyncio.ensure_future(self._cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {get, stop},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (get, stop):
                if not task.done():
                    task.cancel()
        if get in done:
            return get.result()
        if stop in done:
            return None
        return heartbeat_event()

    def _until_heartbeat(self, last_frame: float) -> Optional[float]:
        if not self._heartbeat_seconds:
            return None
        return max(0.0, self._heartbeat_seconds - (asyncio.get_running_loop().time() - last_frame))

    async def events(self) -> AsyncIterator[SyncEvent]:
        """Yield authorized events and heartbeats until cancelled.

        A heartbeat goes out whenever heartbeat_seconds pass without a
        frame reaching this subscriber, including while every queued event
        is being dropped by the access check.
        """
        loop = asyncio.get_running_loop()
        last_frame = loop.time()
        while not self.cancelled:
            timeout = self._until_heartbeat(last_frame)
            if timeout == 0.0:
                event = heartbeat_event()
            else:
                event = await self._next(timeout)
            if event is None:
                break
            if not self._allowed(event):
                self.dropped += 1
                continue
            self.delivered += 1
            last_frame = loop.time()
            yield event


class SyncEventBroker:
    """Registry of live subscriptions.

    Usage::

        broker = SyncEventBroker(access_check=store.can_receive_event)
        sub = broker.subscribe(user_id, session_id)
        try:
            async for event in sub.events():
                ...
        finally:
            broker.unsubscribe(sub)

        broker.publish(make_event(SyncEventKind.BLOB_UPLOAD, vault_id=...))
    """

    def __init__(
        self,
        access_check: AccessCheck,
        heartbeat_seconds: float = 10.0,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self._access_check = access_check
        self._heartbeat_seconds = heartbeat_seconds
        self._queue_size = queue_size
        self._subscribers: Dict[str, Subscription] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, user_id: str, session_id: Optional[str] = None) -> Subscription:
        sub = Subscription(
            user_id=user_id,
            access_check=self._access_check,
            heartbeat_seconds=self._heartbeat_seconds,
            session_id=session_id,
            queue_size=self._queue_size,
        )
        self._subscribers[sub.id] = sub
        logger.info("Sync subscriber %s connected (user %s)", sub.id, user_id)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.cancel("unsubscribed")
        if self._subscribers.pop(sub.id, None) is not None:
            logger.info("Sync subscriber %s disconnected (%s)", sub.id, sub.close_reason)

    def publish(self, event: SyncEvent) -> int:
        """Offer an event to every subscriber. Returns how many accepted it."""
        accepted = 0
        for sub in list(self._subscribers.values()):
            if sub.offer(event):
                accepted += 1
        return accepted

    def _close_where(self, predicate, reason: str) -> int:
        closed: List[Subscription] = [s for s in self._subscribers.values() if predicate(s)]
        for sub in closed:
            sub.cancel(reason)
        return len(closed)

    def close_session(self, session_id: str, reason: str = "session_revoked") -> int:
        return self._close_where(lambda s: s.session_id == session_id, reason)

    def close_user(self, user_id: str, reason: str = "user_closed") -> int:
        return self._close_where(lambda s: s.user_id == user_id, reason)

    def close(self) -> None:
        self._close_where(lambda s: True, "shutdown")
        self._subscribers.clear()

# SealVault - Sync Event Stream (client side)
#
# Explicit state machine around one server event stream:
#
#   CONNECTING -> STREAMING -> (RECONNECTING <-> STREAMING) -> CLOSED
#
# Reconnects use bounded exponential backoff: delay = min(base * 2**n, cap).
# A successful connection resets the attempt counter. When max_attempts
# reconnects fail the stream moves to CLOSED and raises SyncConnectionLost.
# Authorization failures close immediately; they are never retried.

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, List, Optional, Union

from ..config import Settings, get_settings
from ..exceptions import AuthorizationError, SyncConnectionLost, TransportError, ValidationError
from .events import SyncEvent, parse_event

logger = logging.getLogger(__name__)

MAX_RECONNECT_ATTEMPTS = 5
BASE_DELAY_SECONDS = 1.0
MAX_DELAY_SECONDS = 30.0

Opener = Callable[[], AsyncContextManager[AsyncIterator[Any]]]
Handler = Callable[[SyncEvent], Union[None, Awaitable[None]]]


class StreamState(str, Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


def backoff_delay(attempt: int, base: float = BASE_DELAY_SECONDS, cap: float = MAX_DELAY_SECONDS) -> float:
    """Delay before reconnect number attempt+1."""
    return min(base * (2 ** attempt), cap)


class SyncEventStream:
    """Consumes the server event stream and dispatches events to a handler.

    Args:
        opener: Factory returning an async context manager; entering it
            connects, and it yields an async iterator of raw event dicts.
        max_attempts: Reconnect attempts before giving up.
        sleep: Injected for tests.
    """

    def __init__(
        self,
        opener: Opener,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        base_delay: float = BASE_DELAY_SECONDS,
        max_delay: float = MAX_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_state_change: Optional[Callable[[StreamState], None]] = None,
    ):
        self._opener = opener
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep
        self._on_state_change = on_state_change
        self._state = StreamState.CLOSED
        self._closing = False
        self._task: Optional[asyncio.Task] = None
        self.attempts = 0
        self.delays: List[float] = []
        self.last_heartbeat_ms: Optional[int] = None

    @classmethod
    def from_settings(cls, opener: Opener, settings: Optional[Settings] = None, **kwargs) -> "SyncEventStream":
        """Stream whose reconnect policy comes from SEALVAULT_SYNC_* settings."""
        settings = settings or get_settings()
        return cls(
            opener,
            max_attempts=settings.sync_max_reconnects,
            base_delay=settings.sync_base_delay,
            max_delay=settings.sync_max_delay,
            **kwargs,
        )

    @property
    def state(self) -> StreamState:
        return self._state

    def _set_state(self, state: StreamState) -> None:
        if state != self._state:
            logger.debug("Sync stream %s -> %s", self._state.value, state.value)
            self._state = state
            if self._on_state_change is not None:
                self._on_state_change(state)

    async def _dispatch(self, handler: Handler, raw: Any) -> None:
        try:
            event = raw if isinstance(raw, SyncEvent) else parse_event(raw)
        except ValidationError:
            logger.warning("Dropping malformed sync event")
            return
        if event.is_heartbeat:
            self.last_heartbeat_ms = event.t
            return
        result = handler(event)
        if asyncio.iscoroutine(result):
            await result

    async def run(self, handler: Handler) -> None:
        """Stream until close() or until reconnects are exhausted.

        Raises:
            SyncConnectionLost: Reconnect attempts exhausted.
            AuthorizationError: Server rejected the session.
        """
        self._closing = False
        self.attempts = 0
        self._set_state(StreamState.CONNECTING)
        try:
            while not self._closing:
                try:
                    async with self._opener() as stream:
                        self._set_state(StreamState.STREAMING)
                        self.attempts = 0
                        async for raw in stream:
                            await self._dispatch(handler, raw)
                            if self._closing:
                                break
                    if self._closing:
                        break
                    logger.info("Sync stream ended by server")
                except AuthorizationError:
                    logger.warning("Sync stream rejected: session not authorized")
                    raise
                except (TransportError, ConnectionError, OSError) as exc:
                    logger.warning("Sync stream error: %s", exc)

                if self._closing:
                    break
                if self.attempts >= self._max_attempts:
                    logger.error("Sync stream gave up after %d reconnect attempts", self.attempts)
                    raise SyncConnectionLost(
                        f"event stream lost after {self.attempts} reconnect attempts"
                    )

                delay = backoff_delay(self.attempts, self._base_delay, self._max_delay)
                self.attempts += 1
                self.delays.append(delay)
                self._set_state(StreamState.RECONNECTING)
                logger.info("Sync stream reconnecting in %.1fs (attempt %d)", delay, self.attempts)
                await self._sleep(delay)
                self._set_state(StreamState.CONNECTING)
        finally:
            self._set_state(StreamState.CLOSED)

    def start(self, handler: Handler) -> asyncio.Task:
        """Run in the background. Errors surface through the returned task."""
        self._task = asyncio.create_task(self.run(handler))
        return self._task

    async def close(self) -> None:
        """Stop streaming and wait for the background task to finish."""
        self._closing = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._set_state(StreamState.CLOSED)

"""
Supervised push connection with capped exponential backoff.

The supervisor owns one long-running task that cycles
DISCONNECTED -> CONNECTING -> CONNECTED and back. Its state is observable
through ``state`` and ``add_listener`` instead of log lines.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Protocol

from client.errors import PushConnectionError
from core.config import settings

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class PushFeed(Protocol):
    def __aiter__(self) -> AsyncIterator[Any]: ...

    async def close(self) -> None: ...


Connector = Callable[[], Awaitable[PushFeed]]


class ConnectionSupervisor:
    def __init__(
        self,
        connect: Connector,
        on_message: Callable[[Any], Awaitable[None]],
        on_connected: Optional[Callable[[], Awaitable[None]]] = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        stable_after: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._connect = connect
        self._on_message = on_message
        self._on_connected = on_connected
        self.base_delay = settings.RECONNECT_BASE_DELAY_SECONDS if base_delay is None else base_delay
        self.max_delay = settings.RECONNECT_MAX_DELAY_SECONDS if max_delay is None else max_delay
        self.stable_after = settings.RECONNECT_STABLE_SECONDS if stable_after is None else stable_after
        self._sleep = sleep
        self._clock = clock
        self._state = ConnectionState.DISCONNECTED
        self._listeners: List[Callable[[ConnectionState], None]] = []
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self.attempt = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    def add_listener(self, callback: Callable[[ConnectionState], None]) -> None:
        self._listeners.append(callback)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        for callback in list(self._listeners):
            callback(state)

    def backoff_delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** attempt))

    async def _consume(self, feed: PushFeed) -> None:
        try:
            async for message in feed:
                await self._on_message(message)
        except PushConnectionError as exc:
            logger.warning("Push connection lost: %s", exc)
        except Exception:
            logger.exception("Push feed failed")
        finally:
            await feed.close()

    async def run(self) -> None:
        """Keep a push connection open until ``stop`` is called."""
        while not self._stopping:
            self._set_state(ConnectionState.CONNECTING)
            try:
                feed = await self._connect()
            except PushConnectionError as exc:
                self._set_state(ConnectionState.DISCONNECTED)
                logger.warning("Push connect failed: %s", exc)
            except Exception:
                self._set_state(ConnectionState.DISCONNECTED)
                logger.exception("Push connect failed unexpectedly")
            else:
                connected_at = self._clock()
                self._set_state(ConnectionState.CONNECTED)
                try:
                    if self._on_connected is not None:
                        await self._on_connected()
                    await self._consume(feed)
                finally:
                    self._set_state(ConnectionState.DISCONNECTED)
                # A socket that drops right after opening keeps backing off
                if self._clock() - connected_at >= self.stable_after:
                    self.attempt = 0
                if self._stopping:
                    break

            delay = self.backoff_delay(self.attempt)
            self.attempt += 1
            logger.info("Reconnecting in %.1fs (attempt %d)", delay, self.attempt)
            await self._sleep(delay)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._set_state(ConnectionState.DISCONNECTED)

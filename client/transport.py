import asyncio
import json
from typing import Any, AsyncIterator, Dict

import websockets
from websockets.exceptions import WebSocketException

from client.errors import PushConnectionError
from core.config import settings


class WebSocketOrderFeed:
    """Push feed for one order over the ``/ws`` endpoint."""

    def __init__(self, order_id: int, url: str | None = None):
        self.order_id = order_id
        self.url = url or settings.WS_URL
        self._ws = None

    async def open(self) -> "WebSocketOrderFeed":
        try:
            self._ws = await websockets.connect(self.url)
            await self._ws.send(json.dumps({"event": "join_order_room", "data": {"orderId": self.order_id}}))
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise PushConnectionError(f"cannot open {self.url}: {exc}") from exc
        return self

    async def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        if self._ws is None:
            raise PushConnectionError("feed is not open")
        while True:
            try:
                raw = await self._ws.recv()
            except (OSError, WebSocketException) as exc:
                raise PushConnectionError(str(exc)) from exc
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                continue
            yield message

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None


def order_feed_connector(order_id: int, url: str | None = None):
    """Connector for ``ConnectionSupervisor`` that opens a fresh feed each time."""

    async def _connect() -> WebSocketOrderFeed:
        return await WebSocketOrderFeed(order_id, url).open()

    return _connect

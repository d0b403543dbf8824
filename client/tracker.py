import asyncio
import logging
from typing import Any, Callable, List, Optional

from client.api import OrderApiClient
from client.connection import ConnectionState, ConnectionSupervisor, Connector
from client.reconciler import ChangeCallback, OrderReconciler
from client.transport import order_feed_connector

logger = logging.getLogger(__name__)

STATUS_EVENTS = ("joined_order_room", "order_status_update", "admin_order_updated")


class OrderTracker:
    """Keeps one order's status current from push events, falling back to polling."""

    def __init__(
        self,
        order_id: int,
        initial_status=None,
        on_change: Optional[ChangeCallback] = None,
        on_refresh_failed: Optional[Callable[[], None]] = None,
        api: Optional[OrderApiClient] = None,
        connect: Optional[Connector] = None,
        **reconciler_options: Any,
    ):
        self.api = api or OrderApiClient()
        self.reconciler = OrderReconciler(
            order_id,
            self.api.fetch_status,
            initial_status=initial_status,
            on_change=on_change,
            on_refresh_failed=on_refresh_failed,
            **reconciler_options,
        )
        self.supervisor = ConnectionSupervisor(
            connect or order_feed_connector(order_id),
            on_message=self._on_message,
            on_connected=self.reconciler.on_connected,
        )
        self._tasks: List[asyncio.Task] = []
        self._closing: Optional[asyncio.Task] = None

    @property
    def status(self):
        return self.reconciler.local_status

    @property
    def connection_state(self) -> ConnectionState:
        return self.supervisor.state

    async def _on_message(self, message: Any) -> None:
        if isinstance(message, dict) and message.get("event") in STATUS_EVENTS:
            self.reconciler.handle_push(message.get("data") or {})
            if self.reconciler.is_terminal and self._closing is None:
                # Nothing can change after a terminal status
                self._closing = asyncio.create_task(self.stop())

    async def start(self) -> None:
        self._tasks = [
            self.supervisor.start(),
            asyncio.create_task(self.reconciler.run()),
        ]

    async def wait(self) -> None:
        """Block until the order reaches a terminal status or the tracker is stopped."""
        if self._tasks:
            await self._tasks[1]
        await self.stop()

    async def stop(self) -> None:
        self.reconciler.stop()
        await self.supervisor.stop()
        for task in self._tasks[1:]:
            if not task.done():
                await task
        logger.debug("Tracker for order %s stopped", self.reconciler.order_id)

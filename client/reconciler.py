"""
Client-side view of one order's status.

Pushed events and periodic polls both funnel into ``apply``, which is
idempotent and only moves forward along the status graph. Nothing
changes once a terminal status is held. A poll answered before a push
landed may carry an older status; that read is ignored. Polling
only runs while the order is non-terminal and no push arrived within the
last interval. Poll failures are retried silently on the next tick until
``failure_threshold`` consecutive failures, at which point the owner is told
once through ``on_refresh_failed``.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from client.errors import PollFailure
from core.config import settings
from core.exceptions import UnknownStatus
from services.order_status import TERMINAL_STATUSES, OrderStatus, is_reachable, normalize_status
from services.order_store import normalize_order_payload

logger = logging.getLogger(__name__)

StatusFetcher = Callable[[int], Awaitable[Any]]
ChangeCallback = Callable[[OrderStatus, Optional[OrderStatus], str], None]

PUSH = "push"
POLL = "poll"


class OrderReconciler:
    def __init__(
        self,
        order_id: int,
        fetch_status: StatusFetcher,
        initial_status=None,
        on_change: Optional[ChangeCallback] = None,
        on_refresh_failed: Optional[Callable[[], None]] = None,
        poll_interval: float | None = None,
        poll_timeout: float | None = None,
        failure_threshold: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.order_id = order_id
        self._fetch_status = fetch_status
        self._on_change = on_change
        self._on_refresh_failed = on_refresh_failed
        self.poll_interval = settings.ORDER_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.poll_timeout = settings.ORDER_POLL_TIMEOUT_SECONDS if poll_timeout is None else poll_timeout
        self.failure_threshold = (
            settings.ORDER_POLL_FAILURE_THRESHOLD if failure_threshold is None else failure_threshold
        )
        self._clock = clock

        self.local_status: Optional[OrderStatus] = (
            normalize_status(initial_status) if initial_status is not None else None
        )
        self.last_sync_time: Optional[float] = None
        self.last_push_time: Optional[float] = None
        self.consecutive_failures = 0
        self.refresh_failed = False
        self._stopped = asyncio.Event()

    @property
    def is_terminal(self) -> bool:
        return self.local_status in TERMINAL_STATUSES

    def apply(self, status, source: str = PUSH) -> bool:
        """Adopt ``status`` if it lies ahead of the local one. Returns True on change."""
        if self.is_terminal:
            return False
        try:
            status = normalize_status(status)
        except UnknownStatus:
            logger.warning("Order %s: ignoring unknown status %r from %s", self.order_id, status, source)
            return False

        if status == self.local_status:
            self.last_sync_time = self._clock()
            return False
        if self.local_status is not None and not is_reachable(self.local_status, status):
            # Read before a newer update landed locally
            logger.debug("Order %s: ignoring stale %s from %s while at %s",
                         self.order_id, status.value, source, self.local_status.value)
            return False

        self.last_sync_time = self._clock()
        previous, self.local_status = self.local_status, status
        logger.info("Order %s: %s -> %s (%s)", self.order_id,
                    previous.value if previous else None, status.value, source)
        if self._on_change is not None:
            self._on_change(status, previous, source)
        if self.is_terminal:
            self._stopped.set()
        return True

    def handle_push(self, payload: Dict[str, Any]) -> bool:
        """Apply an ``order_status_update`` payload addressed to this order."""
        if not isinstance(payload, dict):
            return False
        try:
            data = normalize_order_payload(payload)
        except UnknownStatus:
            logger.warning("Order %s: ignoring push with unknown status %r", self.order_id, payload)
            return False
        if str(data.get("id")) != str(self.order_id) or "status" not in data:
            return False
        self.last_push_time = self._clock()
        return self.apply(data["status"], PUSH)

    async def poll_once(self) -> bool:
        """Pull the stored status once. Returns True if it changed the local view."""
        if self.is_terminal:
            return False
        try:
            status = await asyncio.wait_for(self._fetch_status(self.order_id), timeout=self.poll_timeout)
        except (PollFailure, asyncio.TimeoutError, UnknownStatus) as exc:
            self._record_failure(exc)
            return False

        self.consecutive_failures = 0
        self.refresh_failed = False
        return self.apply(status, POLL)

    def _record_failure(self, exc: Exception) -> None:
        self.consecutive_failures += 1
        logger.warning("Order %s: poll failed (%d in a row): %s",
                       self.order_id, self.consecutive_failures, str(exc) or type(exc).__name__)
        if self.consecutive_failures >= self.failure_threshold and not self.refresh_failed:
            self.refresh_failed = True
            if self._on_refresh_failed is not None:
                self._on_refresh_failed()

    async def on_connected(self) -> None:
        """Close any gap left while the push connection was down."""
        await self.poll_once()

    def _push_is_fresh(self) -> bool:
        return (
            self.last_push_time is not None
            and self._clock() - self.last_push_time < self.poll_interval
        )

    async def run(self) -> None:
        """Poll every ``poll_interval`` until terminal or stopped."""
        while not self.is_terminal and not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.poll_interval)
                break
            except asyncio.TimeoutError:
                pass
            if not self._push_is_fresh():
                await self.poll_once()
        logger.debug("Order %s: polling stopped at %s", self.order_id, self.local_status)

    def stop(self) -> None:
        self._stopped.set()

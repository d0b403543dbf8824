import asyncio
from typing import Any, Dict

import requests

from client.errors import PollFailure
from core.config import settings
from services.order_status import OrderStatus, normalize_status
from services.order_store import normalize_order_payload


class OrderApiClient:
    """Blocking REST client for the order snapshot used by the polling fallback."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None, session=None):
        self.base_url = (settings.API_BASE_URL if base_url is None else base_url).rstrip("/")
        self.timeout = settings.ORDER_POLL_TIMEOUT_SECONDS if timeout is None else timeout
        self.session = session or requests.Session()

    def get_order(self, order_id: int) -> Dict[str, Any]:
        try:
            resp = self.session.get(f"{self.base_url}/orders/{order_id}", timeout=self.timeout)
            resp.raise_for_status()
            return normalize_order_payload(resp.json())
        except requests.RequestException as exc:
            raise PollFailure(f"GET /orders/{order_id} failed: {exc}") from exc

    async def fetch_status(self, order_id: int) -> OrderStatus:
        order = await asyncio.to_thread(self.get_order, order_id)
        if "status" not in order:
            raise PollFailure(f"Order {order_id} snapshot has no status")
        return normalize_status(order["status"])

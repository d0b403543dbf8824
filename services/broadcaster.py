"""
In-process pub/sub for order events.

Rooms are ``order_<id>`` for the customer and anyone tracking one order and
``admin_room`` for dashboards. Subscriptions live in this process only; a
horizontally scaled deployment needs a shared pub/sub layer in front of this.
"""
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from core.exceptions import NotificationDeliveryFailure
from schemas.order import OrderStatusEvent

logger = logging.getLogger(__name__)

ADMIN_ROOM = "admin_room"

ORDER_STATUS_UPDATE = "order_status_update"
ADMIN_ORDER_UPDATED = "admin_order_updated"
NEW_ORDER = "new_order"


class Channel(Protocol):
    async def send(self, event: str, data: Dict[str, Any]) -> None: ...


def order_room(order_id: int) -> str:
    return f"order_{order_id}"


@dataclass(eq=False)
class Subscription:
    room: str
    channel: Channel
    id: int
    broadcaster: Optional["Broadcaster"] = field(default=None, repr=False)

    def cancel(self) -> None:
        if self.broadcaster is not None:
            self.broadcaster.unsubscribe(self)


class Broadcaster:
    def __init__(self):
        self._rooms: Dict[str, Dict[int, Subscription]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _add(self, room: str, channel: Channel) -> Subscription:
        with self._lock:
            sub = Subscription(room=room, channel=channel, id=next(self._ids), broadcaster=self)
            self._rooms.setdefault(room, {})[sub.id] = sub
        logger.debug("Subscribed #%s to %s", sub.id, room)
        return sub

    def subscribe(self, order_id: int, channel: Channel) -> Subscription:
        return self._add(order_room(order_id), channel)

    def subscribe_admin(self, channel: Channel) -> Subscription:
        return self._add(ADMIN_ROOM, channel)

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a registration. Unknown or already removed handles are ignored."""
        with self._lock:
            members = self._rooms.get(subscription.room)
            if not members or members.pop(subscription.id, None) is None:
                return
            if not members:
                del self._rooms[subscription.room]
        logger.debug("Unsubscribed #%s from %s", subscription.id, subscription.room)

    def subscriber_count(self, order_id: int) -> int:
        with self._lock:
            return len(self._rooms.get(order_room(order_id), {}))

    def admin_count(self) -> int:
        with self._lock:
            return len(self._rooms.get(ADMIN_ROOM, {}))

    def clear(self) -> None:
        with self._lock:
            self._rooms.clear()

    async def _deliver(self, room: str, event: str, data: Dict[str, Any]) -> int:
        with self._lock:
            targets: List[Subscription] = list(self._rooms.get(room, {}).values())

        delivered = 0
        for sub in targets:
            try:
                await sub.channel.send(event, data)
            except NotificationDeliveryFailure as exc:
                logger.warning("Dropped %s for subscriber #%s: %s", event, sub.id, exc)
                continue
            except Exception:
                logger.exception("Subscriber #%s in %s crashed on %s", sub.id, room, event)
                continue
            delivered += 1
        return delivered

    async def publish(self, order_id: int, event: str, data: Dict[str, Any]) -> int:
        """Send ``event`` to everyone in the order's room. Returns how many received it."""
        return await self._deliver(order_room(order_id), event, data)

    async def publish_admin(self, event: str, data: Dict[str, Any]) -> int:
        return await self._deliver(ADMIN_ROOM, event, data)

    async def notify_status_change(self, order) -> int:
        """Fan a persisted status change out to the order room and to admin dashboards."""
        payload = status_event_payload(order)
        delivered = await self.publish(order.id, ORDER_STATUS_UPDATE, payload)
        delivered += await self.publish_admin(ADMIN_ORDER_UPDATED, payload)
        logger.info("Broadcast order %s -> %s to %d subscriber(s)", order.id, order.status, delivered)
        return delivered


def status_event_payload(order) -> Dict[str, Any]:
    event = OrderStatusEvent(
        order_id=order.id,
        status=order.status,
        reason=order.rejection_reason,
        timestamp=order.updated_at,
    )
    return event.model_dump(mode="json", by_alias=True, exclude_none=True)


broadcaster = Broadcaster()


def get_broadcaster() -> Broadcaster:
    return broadcaster

"""
WebSocket endpoint for live order updates.

Messages in both directions use the envelope ``{"event": name, "data": {...}}``.
Clients send ``join_order_room``/``leave_order_room`` with ``{"orderId": id}``
or ``join_admin_room``; the server pushes ``order_status_update``,
``admin_order_updated`` and ``new_order``.
"""
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import sessionmaker

from core.db import get_session_factory
from core.exceptions import NotificationDeliveryFailure, OrderNotFound
from services import order_store
from services.broadcaster import Broadcaster, Subscription, get_broadcaster, order_room

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


class WebSocketChannel:
    """Broadcaster channel backed by one accepted WebSocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send(self, event: str, data: Dict[str, Any]) -> None:
        try:
            await self.websocket.send_json({"event": event, "data": data})
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise NotificationDeliveryFailure("websocket", str(exc)) from exc


def _order_id(data: Any) -> int | None:
    if not isinstance(data, dict):
        return None
    value = data.get("orderId", data.get("order_id"))
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _current_status(session_factory: sessionmaker, order_id: int) -> str:
    # Short session per lookup: an idle socket holds no pooled connection
    with session_factory() as db:
        return order_store.get_order(db, order_id).status


@router.websocket("/ws")
async def order_updates(
    websocket: WebSocket,
    session_factory: sessionmaker = Depends(get_session_factory),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    await websocket.accept()
    channel = WebSocketChannel(websocket)
    order_subs: Dict[int, Subscription] = {}
    admin_subs: List[Subscription] = []

    async def reply(event: str, data: Dict[str, Any]) -> None:
        await websocket.send_json({"event": event, "data": data})

    try:
        while True:
            message = await websocket.receive_json()
            event = message.get("event") if isinstance(message, dict) else None
            data = message.get("data") if isinstance(message, dict) else None

            if event == "join_order_room":
                order_id = _order_id(data)
                if order_id is None:
                    await reply("error", {"detail": "orderId is required"})
                    continue
                # Subscribe before reading so no update falls between the read and the ack
                joined = order_id not in order_subs
                if joined:
                    order_subs[order_id] = broadcaster.subscribe(order_id, channel)
                try:
                    status = await run_in_threadpool(_current_status, session_factory, order_id)
                except OrderNotFound as exc:
                    if joined:
                        broadcaster.unsubscribe(order_subs.pop(order_id))
                    await reply("error", {"detail": exc.detail})
                    continue
                await reply("joined_order_room", {"orderId": order_id, "status": status})
                logger.debug("Socket joined %s", order_room(order_id))

            elif event == "leave_order_room":
                order_id = _order_id(data)
                sub = order_subs.pop(order_id, None) if order_id is not None else None
                if sub is not None:
                    broadcaster.unsubscribe(sub)
                await reply("left_order_room", {"orderId": order_id})

            elif event == "join_admin_room":
                if not admin_subs:
                    admin_subs.append(broadcaster.subscribe_admin(channel))
                await reply("joined_admin_room", {})

            else:
                await reply("error", {"detail": f"Unknown event: {event!r}"})
    except WebSocketDisconnect:
        logger.debug("Socket disconnected with %d order room(s)", len(order_subs))
    finally:
        for sub in [*order_subs.values(), *admin_subs]:
            broadcaster.unsubscribe(sub)

"""
Order Store: the single source of truth for orders.

Reads go through ``get_order``/``list_orders``. The only status write is
``compare_and_set_status``, a conditional UPDATE keyed on the previously
observed status.
"""
import logging
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from core.exceptions import ConcurrentModification, OrderNotFound
from models.order import Order
from models.order_item import OrderItem
from services.order_status import INITIAL_STATUS, OrderStatus, normalize_status

logger = logging.getLogger(__name__)

# Upstream field name -> canonical field name
_LEGACY_ORDER_FIELDS = {
    "order_status": "status",
    "orderStatus": "status",
    "rejectionReason": "rejection_reason",
    "orderId": "id",
    "order_id": "id",
    "orderNumber": "order_number",
    "userId": "user_id",
    "totalAmount": "total_amount",
    "deliveryAddress": "delivery_address",
}
_LEGACY_ITEM_FIELDS = {
    "productId": "product_id",
    "price": "unit_price",
    "unitPrice": "unit_price",
}


def _to_decimal(value: float | int | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _rename(data: Dict[str, Any], mapping: Dict[str, str]) -> Dict[str, Any]:
    out = {}
    for key, value in data.items():
        target = mapping.get(key, key)
        # A canonical key always wins over its legacy spelling
        if target in out and key != target:
            continue
        out[target] = value
    return out


def normalize_order_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """Translate loosely-typed upstream order payloads into the canonical shape."""
    if not isinstance(data, dict):
        return data
    out = _rename(data, _LEGACY_ORDER_FIELDS)
    if isinstance(out.get("items"), list):
        out["items"] = [
            _rename(item, _LEGACY_ITEM_FIELDS) if isinstance(item, dict) else item
            for item in out["items"]
        ]
    if isinstance(out.get("status"), str):
        out["status"] = normalize_status(out["status"]).value
    return out


def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6].upper()}"


def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


def create_order(db: Session, user_id: int, items: Iterable[Any], delivery_address: Dict[str, Any]) -> Order:
    """Persist a new order in the initial status. Items need product_id, name, quantity and unit_price."""
    order = Order(
        order_number=generate_order_number(),
        user_id=user_id,
        status=INITIAL_STATUS.value,
        rejection_reason=None,
        delivery_address=dict(delivery_address or {}),
    )
    db.add(order)
    db.flush()

    total_amount = Decimal("0.00")
    rows: List[OrderItem] = []
    for item in items:
        unit_price = _to_decimal(item.unit_price)
        line_total = unit_price * _to_decimal(item.quantity)
        total_amount += line_total
        rows.append(
            OrderItem(
                order_id=order.id,
                product_id=str(item.product_id),
                name=item.name,
                quantity=item.quantity,
                unit_price=unit_price,
                total=line_total,
            )
        )

    order.total_amount = total_amount
    db.add_all(rows)
    db.commit()
    db.refresh(order)
    logger.info("Created order id=%s number=%s total=%s", order.id, order.order_number, total_amount)
    return order


def list_orders(
    db: Session,
    status: Optional[OrderStatus] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[Order], int]:
    query = db.query(Order)
    if status is not None:
        query = query.filter(Order.status == status.value)
    total = query.count()
    orders = (
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return orders, total


def count_by_status(db: Session) -> Dict[str, int]:
    counts = {status.value: 0 for status in OrderStatus}
    for status, count in db.query(Order.status, func.count(Order.id)).group_by(Order.status).all():
        counts[status] = count
    return counts


def compare_and_set_status(
    db: Session,
    order_id: int,
    expected_status: OrderStatus,
    new_status: OrderStatus,
    rejection_reason: Optional[str] = None,
) -> Order:
    """
    Move ``order_id`` from ``expected_status`` to ``new_status`` in one statement.

    status, updated_at and rejection_reason change together or not at all.
    Raises ConcurrentModification when the row no longer holds
    ``expected_status`` and OrderNotFound when the row does not exist.
    """
    result = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == expected_status.value)
        .values(
            status=new_status.value,
            rejection_reason=rejection_reason,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        if db.query(Order.id).filter(Order.id == order_id).scalar() is None:
            raise OrderNotFound(order_id)
        raise ConcurrentModification(order_id, expected_status.value)

    db.commit()
    order = db.get(Order, order_id)
    db.refresh(order)
    return order

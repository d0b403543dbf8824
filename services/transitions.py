"""
Status Transition Validator: the sole mutator of ``Order.status``.
"""
import asyncio
import logging
from typing import Optional

from sqlalchemy.orm import Session

from core.exceptions import ConcurrentModification, InvalidTransition, RejectionReasonRequired
from models.order import Order
from services import order_store
from services.broadcaster import Broadcaster, broadcaster as default_broadcaster
from services.order_status import OrderStatus, is_valid_transition, normalize_status

logger = logging.getLogger(__name__)


def _clean_reason(requested: OrderStatus, reason: Optional[str]) -> Optional[str]:
    if requested is not OrderStatus.REJECTED_BY_ADMIN:
        return None
    reason = (reason or "").strip()
    if not reason:
        raise RejectionReasonRequired()
    return reason


def _persist_transition(
    db: Session,
    order_id: int,
    requested: OrderStatus,
    rejection_reason: Optional[str],
    expected_status,
) -> Order:
    order = order_store.get_order(db, order_id)
    prior = normalize_status(expected_status if expected_status is not None else order.status)

    if not is_valid_transition(prior, requested):
        raise InvalidTransition(order_id, prior.value, requested.value)

    order = order_store.compare_and_set_status(db, order_id, prior, requested, rejection_reason)
    logger.info("Order %s: %s -> %s", order_id, prior.value, requested.value)
    return order


async def apply_transition(
    db: Session,
    order_id: int,
    requested_status,
    reason: Optional[str] = None,
    expected_status=None,
    broadcaster: Optional[Broadcaster] = None,
) -> Order:
    """
    Validate and persist one status change, then notify subscribers.

    ``expected_status`` pins the prior status the caller observed; without it
    the freshly loaded status is used. The write only lands if the row still
    holds that prior status. Database work runs in a worker thread so the
    event loop keeps serving sockets. Notification is best-effort and never
    undoes the write.
    """
    requested = normalize_status(requested_status)
    rejection_reason = _clean_reason(requested, reason)

    order = await asyncio.to_thread(
        _persist_transition, db, order_id, requested, rejection_reason, expected_status
    )

    try:
        await (broadcaster or default_broadcaster).notify_status_change(order)
    except Exception:
        logger.exception("Status change of order %s persisted but could not be broadcast", order_id)
    return order


async def transition_with_retry(
    db: Session,
    order_id: int,
    requested_status,
    reason: Optional[str] = None,
    expected_status=None,
    broadcaster: Optional[Broadcaster] = None,
) -> Order:
    """
    ``apply_transition`` with one reread-and-retry on a lost race.

    A caller that pinned ``expected_status`` asked for exactly that prior
    state, so its conflict is surfaced instead of retried. The retry rereads
    the row and fails with InvalidTransition if the move is no longer legal.
    """
    try:
        return await apply_transition(db, order_id, requested_status, reason, expected_status, broadcaster)
    except ConcurrentModification:
        if expected_status is not None:
            raise
        logger.info("Order %s changed underneath a transition request, retrying once", order_id)
        db.expire_all()
        return await apply_transition(db, order_id, requested_status, reason, None, broadcaster)

import math
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from core.db import get_db
from core.exceptions import RejectionReasonRequired
from services import order_store
from services.broadcaster import NEW_ORDER, Broadcaster, get_broadcaster
from services.order_status import OrderStatus, normalize_status
from services.transitions import transition_with_retry
from schemas.order import (
    DashboardStats,
    OrderCreate,
    OrderOut,
    OrderPage,
    Pagination,
    RejectRequest,
    StatusUpdateRequest,
)

router = APIRouter(prefix="/orders", tags=["orders"])


def _create_snapshot(db: Session, data: OrderCreate) -> OrderOut:
    order = order_store.create_order(db, data.user_id, data.items, data.delivery_address)
    return OrderOut.model_validate(order)


@router.post("/", response_model=OrderOut, status_code=201)
async def create_order(
    data: OrderCreate,
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    snapshot = await run_in_threadpool(_create_snapshot, db, data)
    await broadcaster.publish_admin(NEW_ORDER, snapshot.model_dump(mode="json"))
    return snapshot


@router.get("/", response_model=OrderPage)
def list_orders(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    status_filter = normalize_status(status) if status else None
    orders, total = order_store.list_orders(db, status_filter, page, limit)
    return OrderPage(
        data=[OrderOut.model_validate(o) for o in orders],
        pagination=Pagination(total=total, page=page, limit=limit, pages=math.ceil(total / limit)),
    )


@router.get("/stats/dashboard", response_model=DashboardStats)
def dashboard_stats(db: Session = Depends(get_db)):
    counts = order_store.count_by_status(db)
    return DashboardStats(total=sum(counts.values()), by_status=counts)


@router.get("/{order_id}", response_model=OrderOut)
def get_order(order_id: int, db: Session = Depends(get_db)):
    return order_store.get_order(db, order_id)


@router.post("/{order_id}/accept", response_model=OrderOut)
async def accept_order(
    order_id: int,
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    return await transition_with_retry(db, order_id, OrderStatus.ADMIN_ACCEPTED, broadcaster=broadcaster)


@router.post("/{order_id}/reject", response_model=OrderOut)
async def reject_order(
    order_id: int,
    data: RejectRequest,
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    if not data.reason:
        raise RejectionReasonRequired()
    return await transition_with_retry(
        db, order_id, OrderStatus.REJECTED_BY_ADMIN, reason=data.reason, broadcaster=broadcaster
    )


@router.patch("/{order_id}/status", response_model=OrderOut)
async def update_order_status(
    order_id: int,
    data: StatusUpdateRequest,
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    return await transition_with_retry(
        db,
        order_id,
        data.status,
        reason=data.reason,
        expected_status=data.expected_status,
        broadcaster=broadcaster,
    )

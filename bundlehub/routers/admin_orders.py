import math
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session, selectinload

from ..core.context import AppContext, get_context
from ..core.database import get_db
from ..core.errors import NotFoundError, ValidationError
from ..dependencies import admin_required
from ..models.order import Order, OrderStatus
from ..models.user import User
from ..schemas.orders import (
    ApproveOrderRequest,
    DecisionResponse,
    OrderListResponse,
    OrderResponse,
    Pagination,
    RejectOrderRequest,
)
from ..services import approval, fulfillment

router = APIRouter(prefix="/admin/orders", tags=["admin"])


@router.get("", response_model=OrderListResponse, dependencies=[Depends(admin_required)])
def list_orders(
    status: Optional[str] = Query(None, description="Order status or 'all'"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    query = db.query(Order)
    if status and status.lower() != "all":
        try:
            query = query.filter(Order.status == OrderStatus(status.upper()))
        except ValueError:
            raise ValidationError(f"Unknown order status: {status}")

    total = query.count()
    orders = (
        query.options(selectinload(Order.items))
        .order_by(Order.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return OrderListResponse(
        orders=[OrderResponse.model_validate(o) for o in orders],
        pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )


@router.get("/{order_id}", response_model=OrderResponse, dependencies=[Depends(admin_required)])
def get_order(order_id: str, db: Session = Depends(get_db)):
    order = db.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found")
    return order


@router.post("/{order_id}/approve", response_model=DecisionResponse)
def approve_order(
    order_id: str,
    background_tasks: BackgroundTasks,
    payload: Optional[ApproveOrderRequest] = None,
    admin: User = Depends(admin_required),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """Approve an uploaded payment; the access email goes out after the response."""
    notes = payload.notes if payload else None
    result = approval.approve_order(db, order_id, admin, notes)
    background_tasks.add_task(fulfillment.dispatch_job, context, result.job_id)
    return DecisionResponse(
        message="Order approved successfully. Bundle download links will be sent via email shortly.",
        orderId=result.order.id,
        status=result.order.status.value,
    )


@router.post("/{order_id}/reject", response_model=DecisionResponse)
def reject_order(
    order_id: str,
    payload: RejectOrderRequest,
    background_tasks: BackgroundTasks,
    admin: User = Depends(admin_required),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    result = approval.reject_order(db, order_id, admin, payload.reason)
    background_tasks.add_task(fulfillment.dispatch_job, context, result.job_id)
    return DecisionResponse(
        message="Order rejected and customer notified",
        orderId=result.order.id,
        status=result.order.status.value,
    )

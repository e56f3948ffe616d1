from typing import Optional

from fastapi import APIRouter, Query
from starlette import status

from models.order_tracking import OrderTracking
from models.orders import Order, OrderStatus
from schemas.order_schemas import (AdminStatusUpdateRequest, OrderDetail, OrderSummary, TrackingEntry,
                                   TransitionResponse)
from services.checkout_service import CheckoutService
from services.order_state_machine import AdminStatusUpdate, OrderStateMachine
from utils.deps import admin_dependency, db_dependency, notifier_dependency, user_dependency
from utils.logger import get_logger

# Setup logger
logger = get_logger(__name__)


router = APIRouter(
    prefix="/orders",
    tags=["orders"]
)

admin_router = APIRouter(
    prefix="/admin",
    tags=["admin"]
)


def current_status(order: Order) -> OrderStatus:
    """Latest tracking entry wins; orders without history fall back to the row."""
    return order.tracking[-1].status if order.tracking else order.status


def order_detail(order: Order) -> OrderDetail:
    detail = OrderDetail.model_validate(order)
    detail.current_status = current_status(order)
    return detail


@router.get("", status_code=status.HTTP_200_OK, response_model=list[OrderSummary])
async def list_my_orders(user: user_dependency, db: db_dependency,
                         limit: int = Query(default=50, ge=1, le=200), offset: int = Query(default=0, ge=0)):
    return db.query(Order).filter(Order.user_id == user["user_id"]) \
        .order_by(Order.created_at.desc()).offset(offset).limit(limit).all()


@router.get("/{order_id}", status_code=status.HTTP_200_OK, response_model=OrderDetail)
async def get_order(order_id: str, user: user_dependency, db: db_dependency):
    order = CheckoutService.get_owned_order(db, order_id, user)
    return order_detail(order)


@router.get("/{order_id}/tracking", status_code=status.HTTP_200_OK, response_model=list[TrackingEntry])
async def get_order_tracking(order_id: str, user: user_dependency, db: db_dependency):
    order = CheckoutService.get_owned_order(db, order_id, user)
    return db.query(OrderTracking).filter(OrderTracking.order_id == order.id) \
        .order_by(OrderTracking.id).all()


@router.patch("/{order_id}/status", status_code=status.HTTP_200_OK, response_model=TransitionResponse)
async def update_order_status(order_id: str, body: AdminStatusUpdateRequest, admin: admin_dependency,
                              db: db_dependency, notifier: notifier_dependency):
    """
    Staff fulfilment update.

    Moves only forward along the pipeline, never past ``confirmed`` without
    an approved prescription when one is required, and never onto an unpaid
    order. Same-status updates add a tracking entry (e.g. a new location).
    """
    result = OrderStateMachine(db, notifier).apply(AdminStatusUpdate(
        order_id=order_id,
        new_status=body.status.value,
        actor=admin["user_id"],
        location=body.location,
        note=body.note,
    ))
    return TransitionResponse(
        result=result.kind.value,
        order_id=result.order_id,
        order_status=result.order_status.value if result.order_status else None,
        payment_recorded=result.payment_recorded,
        message=result.message,
    )


@admin_router.get("/orders", status_code=status.HTTP_200_OK, response_model=list[OrderSummary])
async def list_orders(admin: admin_dependency, db: db_dependency,
                      order_status: Optional[OrderStatus] = Query(default=None, alias="status"),
                      limit: int = Query(default=50, ge=1, le=200), offset: int = Query(default=0, ge=0)):
    query = db.query(Order)
    if order_status is not None:
        query = query.filter(Order.status == order_status)
    return query.order_by(Order.created_at.desc()).offset(offset).limit(limit).all()

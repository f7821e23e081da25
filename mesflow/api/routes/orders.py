import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...core.process.order_status import OrderService
from ..dependencies import get_order_service
from ..models.common import ApiResponse
from ..models.workflow import OrderCancelRequest, OrderCreateRequest

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("", response_model=ApiResponse, status_code=201)
async def create_order_endpoint(
    request: OrderCreateRequest,
    orders: OrderService = Depends(get_order_service),
):
    """Create a PENDING order for a process."""
    summary = await orders.create_order(
        order_number=request.order_number,
        process_id=request.process_id,
        quantity=request.quantity,
        production_number=request.production_number,
        priority=request.priority,
        created_by=request.created_by,
    )
    return ApiResponse(data=summary.to_dict(), message="Order created")


@router.get("/{order_id}", response_model=ApiResponse)
async def get_order_endpoint(order_id: str, orders: OrderService = Depends(get_order_service)):
    summary = await orders.get_order(order_id)
    return ApiResponse(data=summary.to_dict())


@router.post("/{order_id}/cancel", response_model=ApiResponse)
async def cancel_order_endpoint(
    order_id: str,
    request: OrderCancelRequest,
    orders: OrderService = Depends(get_order_service),
):
    summary = await orders.cancel_order(order_id, request.changed_by, request.reason)
    logger.info(f"Order {summary.order_number} cancelled by {request.changed_by or 'system'}")
    return ApiResponse(data=summary.to_dict(), message="Order cancelled")


@router.get("/{order_id}/history", response_model=ApiResponse)
async def get_order_history_endpoint(
    order_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    orders: OrderService = Depends(get_order_service),
):
    """Status history of an order, most recent first."""
    entries = await orders.get_status_history(order_id, limit)
    return ApiResponse(data=[entry.to_dict() for entry in entries])

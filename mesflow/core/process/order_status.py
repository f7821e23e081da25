import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.db import Database, on_commit
from ..database.models import (
    Order,
    OrderStatus,
    OrderStatusHistory,
    OrderStep,
    OrderStepStatus,
    Process,
    Step,
    Workstation,
    utcnow,
)
from ..exceptions import (
    ConflictError,
    InvalidStatusTransition,
    NotFoundError,
    OrderNotFound,
    OrderTerminal,
    ValidationError,
)
from ..metrics import ORDER_TRANSITIONS

logger = logging.getLogger(__name__)

# --- Order status transitions --- #
VALID_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED}),
    OrderStatus.IN_PROGRESS: frozenset(
        {OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.CANCELLED}
    ),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def validate_status_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, frozenset())


@dataclass
class StatusHistoryEntry:
    id: str
    order_id: str
    from_status: Optional[OrderStatus]
    to_status: OrderStatus
    changed_by: str
    changed_at: datetime
    reason: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_row(cls, row: OrderStatusHistory) -> "StatusHistoryEntry":
        return cls(
            id=row.id,
            order_id=row.order_id,
            from_status=row.from_status,
            to_status=row.to_status,
            changed_by=row.changed_by,
            changed_at=row.changed_at,
            reason=row.reason,
            notes=row.notes,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "orderId": self.order_id,
            "fromStatus": self.from_status.value if self.from_status else None,
            "toStatus": self.to_status.value,
            "changedBy": self.changed_by,
            "changedAt": self.changed_at.isoformat(),
            "reason": self.reason,
            "notes": self.notes,
        }


@dataclass
class OrderSummary:
    id: str
    order_number: str
    production_number: Optional[str]
    quantity: int
    status: OrderStatus
    process_id: str
    current_step_id: Optional[str]
    current_station_id: Optional[str]
    created_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_row(cls, order: Order) -> "OrderSummary":
        return cls(
            id=order.id,
            order_number=order.order_number,
            production_number=order.production_number,
            quantity=order.quantity,
            status=order.status,
            process_id=order.process_id,
            current_step_id=order.current_step_id,
            current_station_id=order.current_station_id,
            created_at=order.created_at,
            started_at=order.started_at,
            completed_at=order.completed_at,
            updated_at=order.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "orderNumber": self.order_number,
            "productionNumber": self.production_number,
            "quantity": self.quantity,
            "status": self.status.value,
            "processId": self.process_id,
            "currentStepId": self.current_step_id,
            "currentStationId": self.current_station_id,
            "createdAt": iso(self.created_at),
            "startedAt": iso(self.started_at),
            "completedAt": iso(self.completed_at),
            "updatedAt": iso(self.updated_at),
        }


async def lock_order(db: AsyncSession, order_id: str) -> Order:
    """Load an order for update; raises OrderNotFound"""
    order = (
        await db.execute(select(Order).where(Order.id == order_id).with_for_update())
    ).scalars().first()
    if order is None:
        raise OrderNotFound(order_id)
    return order


def change_order_status(
    db: AsyncSession,
    order: Order,
    new_status: OrderStatus,
    changed_by: Optional[str],
    reason: Optional[str] = None,
    notes: Optional[str] = None,
) -> OrderStatusHistory:
    """
    Move ``order`` to ``new_status`` and append the matching history row.

    Runs in the caller's transaction so the status change and its history
    row commit or roll back together.

    Raises:
        OrderTerminal: the order is already COMPLETED, FAILED or CANCELLED
        InvalidStatusTransition: the transition is not allowed
    """
    current = order.status
    if current.is_terminal:
        raise OrderTerminal(order.id, current.value)
    if not validate_status_transition(current, new_status):
        raise InvalidStatusTransition(current.value, new_status.value)

    now = utcnow()
    order.status = new_status
    order.updated_at = now
    if new_status == OrderStatus.IN_PROGRESS and order.started_at is None:
        order.started_at = now
    if new_status == OrderStatus.COMPLETED:
        order.completed_at = now

    entry = OrderStatusHistory(
        order_id=order.id,
        from_status=current,
        to_status=new_status,
        changed_by=changed_by or "system",
        changed_at=now,
        reason=reason,
        notes=notes,
    )
    db.add(entry)

    on_commit(db, ORDER_TRANSITIONS.labels(to_status=new_status.value).inc)
    logger.info(
        f"Order {order.order_number}: {current.value} -> {new_status.value} "
        f"by {entry.changed_by} ({reason or 'no reason'})"
    )
    return entry


async def repair_order_references(db: AsyncSession, order: Order) -> bool:
    """Clear current step/station references that point at deleted rows"""
    repaired = False
    if order.current_step_id is not None and await db.get(Step, order.current_step_id) is None:
        logger.warning(f"Order {order.order_number}: clearing dangling step {order.current_step_id}")
        order.current_step_id = None
        repaired = True
    if (
        order.current_station_id is not None
        and await db.get(Workstation, order.current_station_id) is None
    ):
        logger.warning(
            f"Order {order.order_number}: clearing dangling workstation {order.current_station_id}"
        )
        order.current_station_id = None
        repaired = True
    return repaired


class OrderService:
    """Order lifecycle outside step execution: creation, cancellation, history"""

    def __init__(self, database: Database):
        self.database = database

    async def create_order(
        self,
        order_number: str,
        process_id: str,
        quantity: int = 1,
        production_number: Optional[str] = None,
        priority: int = 0,
        created_by: Optional[str] = None,
    ) -> OrderSummary:
        """
        Create a PENDING order positioned at the first step of its process.

        One OrderStep row is created per process step.
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", quantity=quantity)

        async with self.database.transaction() as db:
            process = await db.get(Process, process_id)
            if process is None:
                raise NotFoundError(f"Process {process_id} not found", processId=process_id)
            steps = (
                await db.execute(
                    select(Step).where(Step.process_id == process_id).order_by(Step.sequence)
                )
            ).scalars().all()

            now = utcnow()
            order = Order(
                order_number=order_number,
                production_number=production_number,
                quantity=quantity,
                priority=priority,
                status=OrderStatus.PENDING,
                process_id=process_id,
                current_step_id=steps[0].id if steps else None,
                current_station_id=steps[0].workstation_id if steps else None,
                created_at=now,
                updated_at=now,
            )
            db.add(order)
            try:
                await db.flush()
            except IntegrityError as e:
                raise ConflictError(
                    f"Order number {order_number} already exists", orderNumber=order_number
                ) from e

            for step in steps:
                db.add(
                    OrderStep(
                        order_id=order.id,
                        step_id=step.id,
                        workstation_id=step.workstation_id,
                        status=OrderStepStatus.PENDING,
                    )
                )
            db.add(
                OrderStatusHistory(
                    order_id=order.id,
                    from_status=None,
                    to_status=OrderStatus.PENDING,
                    changed_by=created_by or "system",
                    changed_at=now,
                    reason="Order created",
                )
            )
            summary = OrderSummary.from_row(order)

        logger.info(f"Created order {order_number} for process {process_id} with {len(steps)} steps")
        return summary

    async def get_order(self, order_id: str) -> OrderSummary:
        async with self.database.read() as db:
            order = await db.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id)
            return OrderSummary.from_row(order)

    async def cancel_order(
        self, order_id: str, changed_by: Optional[str], reason: Optional[str] = None
    ) -> OrderSummary:
        """
        Cancel a non-terminal order.

        Raises:
            OrderNotFound: unknown order
            OrderTerminal: the order already reached a terminal status
        """
        async with self.database.transaction() as db:
            order = await lock_order(db, order_id)
            await repair_order_references(db, order)
            change_order_status(
                db, order, OrderStatus.CANCELLED, changed_by, reason or "Cancelled by operator"
            )
            summary = OrderSummary.from_row(order)
        return summary

    async def get_status_history(
        self, order_id: str, limit: Optional[int] = None
    ) -> List[StatusHistoryEntry]:
        """Status history of an order, most recent first"""
        async with self.database.read() as db:
            if await db.get(Order, order_id) is None:
                raise OrderNotFound(order_id)
            query = (
                select(OrderStatusHistory)
                .where(OrderStatusHistory.order_id == order_id)
                .order_by(OrderStatusHistory.changed_at.desc())
            )
            if limit:
                query = query.limit(limit)
            rows = (await db.execute(query)).scalars().all()
            return [StatusHistoryEntry.from_row(row) for row in rows]

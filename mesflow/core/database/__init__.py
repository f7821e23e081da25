"""
Database package for MesFlow.

Exposes the SQLAlchemy models and the ``Database`` handle.
"""

from .db import Database
from .models import (
    Action,
    ActionLog,
    ActionLogStatus,
    ActionType,
    Base,
    Device,
    Order,
    OrderStatus,
    OrderStatusHistory,
    OrderStep,
    OrderStepStatus,
    Process,
    Step,
    TerminationReason,
    Workstation,
    WorkstationSession,
    WorkstationStatus,
)

__all__ = [
    "Database",
    "Base",
    "Action",
    "ActionLog",
    "ActionLogStatus",
    "ActionType",
    "Device",
    "Order",
    "OrderStatus",
    "OrderStatusHistory",
    "OrderStep",
    "OrderStepStatus",
    "Process",
    "Step",
    "TerminationReason",
    "Workstation",
    "WorkstationSession",
    "WorkstationStatus",
]

"""
Workflow execution package for MesFlow.

Drives orders through process steps and actions.
"""

from .order_status import (
    VALID_TRANSITIONS,
    OrderService,
    OrderSummary,
    StatusHistoryEntry,
    change_order_status,
    validate_status_transition,
)
from .retry import ActionRetryRunner, compute_backoff
from .validation import rule_error, validate_value, values_match
from .workflow_engine import (
    ActionExecutionResult,
    StepExecutionContext,
    StepExecutionResult,
    WorkflowExecutionEngine,
    WorkflowExecutionState,
    WorkstationTask,
)

__all__ = [
    "WorkflowExecutionEngine",
    "StepExecutionContext",
    "StepExecutionResult",
    "ActionExecutionResult",
    "WorkflowExecutionState",
    "WorkstationTask",
    "OrderService",
    "OrderSummary",
    "StatusHistoryEntry",
    "VALID_TRANSITIONS",
    "change_order_status",
    "validate_status_transition",
    "ActionRetryRunner",
    "compute_backoff",
    "rule_error",
    "validate_value",
    "values_match",
]

"""
Workflow and order API models.
"""

from typing import Any, Dict, Literal, Optional

from pydantic import Field

from .common import CamelModel


class WorkflowExecuteRequest(CamelModel):
    """One workflow call from a workstation client"""

    action: Literal["startStep", "executeAction", "completeStep"]
    order_id: str = Field(..., alias="orderId", min_length=1)
    step_id: str = Field(..., alias="stepId", min_length=1)
    action_id: Optional[str] = Field(None, alias="actionId")
    parameters: Optional[Dict[str, Any]] = None
    success: Optional[bool] = None
    notes: Optional[str] = None
    executed_by: Optional[str] = Field(None, alias="executedBy")
    session_id: Optional[str] = Field(None, alias="sessionId")
    auto_retry: bool = Field(False, alias="autoRetry")


class OrderCreateRequest(CamelModel):
    order_number: str = Field(..., alias="orderNumber", min_length=1)
    process_id: str = Field(..., alias="processId", min_length=1)
    quantity: int = Field(1, ge=1)
    production_number: Optional[str] = Field(None, alias="productionNumber")
    priority: int = 0
    created_by: Optional[str] = Field(None, alias="createdBy")


class OrderCancelRequest(CamelModel):
    changed_by: Optional[str] = Field(None, alias="changedBy")
    reason: Optional[str] = None

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...core.process.workflow_engine import WorkflowExecutionEngine
from ..dependencies import get_workflow_engine
from ..models.common import ApiResponse

router = APIRouter(prefix="/api/workflow", tags=["workflow"])


@router.get("/{order_id}/status", response_model=ApiResponse)
async def get_workflow_status_endpoint(
    order_id: str,
    history_limit: Optional[int] = Query(None, alias="historyLimit", ge=1, le=100),
    engine: WorkflowExecutionEngine = Depends(get_workflow_engine),
):
    """Read-only execution state of an order."""
    state = await engine.get_workflow_execution_state(order_id, history_limit)
    return ApiResponse(data=state.to_dict())

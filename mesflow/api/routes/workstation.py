import logging

from fastapi import APIRouter, Depends, Query

from ...core.exceptions import ValidationError
from ...core.process.retry import ActionRetryRunner
from ...core.process.workflow_engine import StepExecutionContext, WorkflowExecutionEngine
from ...core.session.manager import SessionManager
from ..dependencies import get_retry_runner, get_session_manager, get_workflow_engine
from ..models.common import ApiResponse
from ..models.session import (
    HeartbeatRequest,
    LoginRequest,
    LogoutRequest,
    SessionCheckRequest,
    TakeoverRequest,
)
from ..models.workflow import WorkflowExecuteRequest

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/workstation", tags=["workstation"])


# --- Session endpoints --- #
@router.post("/session/check", response_model=ApiResponse)
async def check_session_endpoint(
    request: SessionCheckRequest,
    sessions: SessionManager = Depends(get_session_manager),
):
    """Report whether an operator can log in to a workstation."""
    check = await sessions.check_session(request.workstation_id)
    return ApiResponse(
        data={
            "workstationId": check.workstation_id,
            "hasActiveSession": check.has_active_session,
            "canLogin": check.can_login,
            "activeSession": check.active_session.to_dict() if check.active_session else None,
            "expiredSession": check.expired_session.to_dict() if check.expired_session else None,
        },
        message=check.message,
    )


@router.post("/login", response_model=ApiResponse)
async def login_endpoint(
    request: LoginRequest,
    sessions: SessionManager = Depends(get_session_manager),
):
    """Open an operator session on a workstation."""
    info = await sessions.login(request.workstation_id, request.username, request.settings)
    return ApiResponse(data=info.to_dict(), message="Login successful")


@router.post("/session/heartbeat", response_model=ApiResponse)
async def heartbeat_endpoint(
    request: HeartbeatRequest,
    sessions: SessionManager = Depends(get_session_manager),
):
    info = await sessions.heartbeat(request.session_id)
    return ApiResponse(data=info.to_dict(), message="Heartbeat received")


@router.post("/session/takeover", response_model=ApiResponse)
async def takeover_endpoint(
    request: TakeoverRequest,
    sessions: SessionManager = Depends(get_session_manager),
):
    """Force the current session off a workstation (or dry-run with forceLogout=false)."""
    result = await sessions.takeover(request.workstation_id, request.new_username, request.force_logout)
    return ApiResponse(
        success=result.can_proceed,
        data={
            "canProceed": result.can_proceed,
            "takenOver": result.taken_over,
            "previousSession": result.previous_session.to_dict() if result.previous_session else None,
            "deposedSessions": result.deposed_sessions,
        },
        message=result.message,
    )


@router.post("/logout", response_model=ApiResponse)
async def logout_endpoint(
    request: LogoutRequest,
    sessions: SessionManager = Depends(get_session_manager),
):
    result = await sessions.logout(
        session_id=request.session_id,
        workstation_id=request.workstation_id,
        username=request.username,
    )
    return ApiResponse(
        data={
            "loggedOut": result.logged_out,
            "session": result.session.to_dict() if result.session else None,
            "gatewayNotified": result.gateway_notified,
        },
        message=result.message,
    )


# --- Workstation work --- #
@router.get("/{workstation_id}/tasks", response_model=ApiResponse)
async def get_tasks_endpoint(
    workstation_id: str,
    limit: int = Query(20, ge=1, le=200),
    engine: WorkflowExecutionEngine = Depends(get_workflow_engine),
):
    """Open orders positioned at this workstation, most recently touched first."""
    tasks = await engine.get_workstation_tasks(workstation_id, limit)
    return ApiResponse(data=[task.to_dict() for task in tasks])


@router.post("/{workstation_id}/execute", response_model=ApiResponse)
async def execute_endpoint(
    workstation_id: str,
    request: WorkflowExecuteRequest,
    engine: WorkflowExecutionEngine = Depends(get_workflow_engine),
    retry_runner: ActionRetryRunner = Depends(get_retry_runner),
):
    """Start a step, execute one of its actions, or complete it."""
    context = StepExecutionContext(
        order_id=request.order_id,
        step_id=request.step_id,
        workstation_id=workstation_id,
        executed_by=request.executed_by,
        session_id=request.session_id,
    )

    if request.action == "startStep":
        result = await engine.start_step_execution(context)
        return ApiResponse(data=result.to_dict(), message=result.message)

    if request.action == "executeAction":
        if not request.action_id:
            raise ValidationError("actionId is required for executeAction")
        if request.auto_retry:
            attempts = await retry_runner.run(context, request.action_id, request.parameters)
            final = attempts[-1]
            data = final.to_dict()
            data["attempts"] = [attempt.to_dict() for attempt in attempts]
        else:
            final = await engine.execute_action(context, request.action_id, request.parameters)
            data = final.to_dict()
        return ApiResponse(
            success=final.success,
            data=data,
            message="Action executed successfully" if final.success else final.error_message,
        )

    if request.success is None:
        raise ValidationError("success is required for completeStep")
    result = await engine.complete_step_execution(context, request.success, request.notes)
    return ApiResponse(data=result.to_dict(), message=result.message)

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.db import Database
from ..database.models import (
    Action,
    ActionLog,
    ActionLogStatus,
    ActionType,
    Device,
    Order,
    OrderStatus,
    OrderStatusHistory,
    OrderStep,
    OrderStepStatus,
    Step,
    Workstation,
    utcnow,
)
from ..devices.gateway import (
    DeviceGatewayClient,
    DeviceInfo,
    DeviceOperation,
    DeviceOperationRequest,
)
from ..exceptions import (
    ActionNotFound,
    DeviceGatewayError,
    DeviceNotConfigured,
    DeviceUnavailable,
    OrderNotFound,
    OrderTerminal,
    RequiredActionsIncomplete,
    StepNotFound,
    StepStateError,
    WorkstationMismatch,
)
from ..metrics import ACTION_EXECUTIONS, DEVICE_DISPATCHES
from ..session.manager import ensure_session_active, find_workstation
from .order_status import StatusHistoryEntry, change_order_status, lock_order, repair_order_references
from .validation import rule_error, validate_value

logger = logging.getLogger(__name__)

DEFAULT_TASK_LIMIT = 20
DEFAULT_DELAY_MS = 1000
# Upper bound for DELAY_WAIT when the action has no timeout
MAX_DELAY_MS = 60_000


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# --- Execution data structures --- #
@dataclass
class StepExecutionContext:
    order_id: str
    step_id: str
    workstation_id: str
    executed_by: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class StepExecutionResult:
    order_id: str
    step_id: str
    order_step_id: str
    order_status: OrderStatus
    step_status: OrderStepStatus
    message: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    next_step_id: Optional[str] = None
    completed_actions: int = 0
    total_actions: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "stepId": self.step_id,
            "orderStepId": self.order_step_id,
            "orderStatus": self.order_status.value,
            "stepStatus": self.step_status.value,
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "nextStepId": self.next_step_id,
            "completedActions": self.completed_actions,
            "totalActions": self.total_actions,
        }


@dataclass
class ActionExecutionResult:
    action_id: str
    order_step_id: str
    action_type: ActionType
    success: bool
    attempt: int
    retryable: bool
    retries_remaining: int
    action_log_id: Optional[str] = None
    actual_value: Optional[Any] = None
    validation_result: Optional[bool] = None
    execution_time_ms: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    response: Optional[Dict[str, Any]] = None
    executed_at: Optional[datetime] = None

    @property
    def status(self) -> ActionLogStatus:
        return ActionLogStatus.SUCCESS if self.success else ActionLogStatus.FAILED

    @property
    def should_retry(self) -> bool:
        return not self.success and self.retryable and self.retries_remaining > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actionId": self.action_id,
            "orderStepId": self.order_step_id,
            "actionType": self.action_type.value,
            "actionLogId": self.action_log_id,
            "success": self.success,
            "status": self.status.value,
            "actualValue": self.actual_value,
            "validationResult": self.validation_result,
            "executionTime": self.execution_time_ms,
            "attempt": self.attempt,
            "retryable": self.retryable,
            "retriesRemaining": self.retries_remaining,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
            "response": self.response,
            "executedAt": _iso(self.executed_at),
        }


@dataclass
class WorkflowExecutionState:
    order_id: str
    order_number: str
    status: OrderStatus
    current_step_id: Optional[str]
    current_station_id: Optional[str]
    current_action_id: Optional[str]
    completed_steps: List[str] = field(default_factory=list)
    failed_steps: List[str] = field(default_factory=list)
    total_steps: int = 0
    completed_actions: int = 0
    total_actions: int = 0
    history: List[StatusHistoryEntry] = field(default_factory=list)

    @property
    def progress(self) -> float:
        if self.total_steps == 0:
            return 0.0
        return round(len(self.completed_steps) / self.total_steps * 100.0, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "orderNumber": self.order_number,
            "status": self.status.value,
            "currentStepId": self.current_step_id,
            "currentStationId": self.current_station_id,
            "currentActionId": self.current_action_id,
            "completedSteps": self.completed_steps,
            "failedSteps": self.failed_steps,
            "totalSteps": self.total_steps,
            "completedActions": self.completed_actions,
            "totalActions": self.total_actions,
            "progress": self.progress,
            "history": [entry.to_dict() for entry in self.history],
        }


@dataclass
class WorkstationTask:
    order_id: str
    order_number: str
    production_number: Optional[str]
    quantity: int
    status: OrderStatus
    priority: int
    current_step_id: Optional[str]
    current_step_name: Optional[str]
    current_step_sequence: Optional[int]
    updated_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "orderNumber": self.order_number,
            "productionNumber": self.production_number,
            "quantity": self.quantity,
            "status": self.status.value,
            "priority": self.priority,
            "currentStepId": self.current_step_id,
            "currentStepName": self.current_step_name,
            "currentStepSequence": self.current_step_sequence,
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class _ActionPlan:
    """Everything needed to run one action attempt, detached from the session"""

    action_id: str
    action_name: str
    action_type: ActionType
    order_id: str
    order_step_id: str
    retry_count: int
    device_address: Optional[str]
    data_type: str
    expected_value: Optional[str]
    validation_rule: Any
    timeout_ms: Optional[int]
    device_id: Optional[str] = None
    device_code: Optional[str] = None
    device_type: Optional[str] = None
    device_brand: Optional[str] = None
    ip_address: Optional[str] = None
    port: Optional[int] = None
    protocol: Optional[str] = None


@dataclass
class _Outcome:
    success: bool
    request_payload: Dict[str, Any]
    response_payload: Optional[Dict[str, Any]] = None
    actual_value: Optional[Any] = None
    validation_result: Optional[bool] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False


class WorkflowExecutionEngine:
    """
    Drives orders through their steps and actions.

    Each mutating operation is one database transaction. Device Gateway
    calls happen outside any transaction; their results are logged in a
    short transaction afterwards.
    """

    def __init__(
        self,
        database: Database,
        gateway: DeviceGatewayClient,
        history_limit: int = 10,
    ):
        self.database = database
        self.gateway = gateway
        self.history_limit = history_limit
        logger.info("WorkflowExecutionEngine initialized.")

    # --- Context resolution --- #
    async def _resolve(
        self, db: AsyncSession, context: StepExecutionContext, lock: bool
    ) -> Tuple[Workstation, Order, Step]:
        workstation = await find_workstation(db, context.workstation_id)
        if context.session_id:
            await ensure_session_active(db, context.session_id, workstation)

        if lock:
            order = await lock_order(db, context.order_id)
        else:
            order = await db.get(Order, context.order_id)
            if order is None:
                raise OrderNotFound(context.order_id)
        if order.status.is_terminal:
            raise OrderTerminal(order.id, order.status.value)

        step = await db.get(Step, context.step_id)
        if step is None or step.process_id != order.process_id:
            raise StepNotFound(
                context.step_id,
                f"Step {context.step_id} does not belong to the process of order {order.order_number}",
            )
        if step.workstation_id is not None and step.workstation_id != workstation.id:
            raise WorkstationMismatch(step.id, context.workstation_id)
        return workstation, order, step

    async def _get_order_step(self, db: AsyncSession, order_id: str, step_id: str) -> Optional[OrderStep]:
        return (
            await db.execute(
                select(OrderStep).where(OrderStep.order_id == order_id, OrderStep.step_id == step_id)
            )
        ).scalars().first()

    def _unfinished_steps_query(self, order: Order):
        """Steps of the order's process whose execution record is missing or not completed"""
        return (
            select(Step)
            .outerjoin(
                OrderStep,
                and_(OrderStep.step_id == Step.id, OrderStep.order_id == order.id),
            )
            .where(
                Step.process_id == order.process_id,
                or_(OrderStep.id.is_(None), OrderStep.status != OrderStepStatus.COMPLETED),
            )
            .order_by(Step.sequence)
        )

    async def _action_progress(self, db: AsyncSession, step: Step, order_step: OrderStep) -> Tuple[List[Action], set]:
        actions = (
            await db.execute(select(Action).where(Action.step_id == step.id).order_by(Action.sequence))
        ).scalars().all()
        succeeded = set(
            (
                await db.execute(
                    select(ActionLog.action_id)
                    .where(
                        ActionLog.order_step_id == order_step.id,
                        ActionLog.status == ActionLogStatus.SUCCESS,
                    )
                    .distinct()
                )
            ).scalars().all()
        )
        return list(actions), succeeded

    # --- Step lifecycle --- #
    async def start_step_execution(self, context: StepExecutionContext) -> StepExecutionResult:
        """
        Start a step of an order at a workstation.

        Moves a PENDING order to IN_PROGRESS (with one history row) and
        positions the order at this step and workstation.

        Raises:
            OrderNotFound, StepNotFound, WorkstationMismatch, OrderTerminal
            StepStateError: an earlier step is unfinished or this step is completed
        """
        async with self.database.transaction() as db:
            workstation, order, step = await self._resolve(db, context, lock=True)
            await repair_order_references(db, order)

            order_step = await self._get_order_step(db, order.id, step.id)
            if order_step is not None and order_step.status == OrderStepStatus.COMPLETED:
                raise StepStateError(f"Step {step.name} is already completed", stepId=step.id)

            blocking = (
                await db.execute(
                    self._unfinished_steps_query(order).where(Step.sequence < step.sequence)
                )
            ).scalars().all()
            if blocking:
                raise StepStateError(
                    f"Previous steps of order {order.order_number} must be completed first",
                    stepId=step.id,
                    pendingStepIds=[s.id for s in blocking],
                )

            now = utcnow()
            if order_step is None:
                order_step = OrderStep(order_id=order.id, step_id=step.id)
                db.add(order_step)
            order_step.status = OrderStepStatus.IN_PROGRESS
            order_step.workstation_id = workstation.id
            order_step.executed_by = context.executed_by
            if order_step.started_at is None:
                order_step.started_at = now
            await db.flush()

            if order.status == OrderStatus.PENDING:
                change_order_status(
                    db,
                    order,
                    OrderStatus.IN_PROGRESS,
                    context.executed_by,
                    reason=f"Step '{step.name}' started",
                )
            order.current_step_id = step.id
            order.current_station_id = workstation.id
            order.updated_at = now

            result = StepExecutionResult(
                order_id=order.id,
                step_id=step.id,
                order_step_id=order_step.id,
                order_status=order.status,
                step_status=order_step.status,
                message="Step execution started",
                started_at=order_step.started_at,
            )

        logger.info(
            f"Order {context.order_id}: step {context.step_id} started at workstation "
            f"{context.workstation_id} by {context.executed_by}"
        )
        return result

    async def complete_step_execution(
        self, context: StepExecutionContext, success: bool, notes: Optional[str] = None
    ) -> StepExecutionResult:
        """
        Finish a started step.

        On success the order moves to the next unfinished step, or to
        COMPLETED when none remain. On failure the order moves to FAILED and
        keeps pointing at the failed step.

        Raises:
            StepStateError: the step was not started
            RequiredActionsIncomplete: success was reported while a required
                action has no successful execution
        """
        async with self.database.transaction() as db:
            _, order, step = await self._resolve(db, context, lock=True)
            await repair_order_references(db, order)

            order_step = await self._get_order_step(db, order.id, step.id)
            if order_step is None or order_step.status != OrderStepStatus.IN_PROGRESS:
                raise StepStateError(
                    f"Step {step.name} has not been started for order {order.order_number}",
                    stepId=step.id,
                )

            actions, succeeded = await self._action_progress(db, step, order_step)
            if success:
                missing = [a.id for a in actions if a.is_required and a.id not in succeeded]
                if missing:
                    raise RequiredActionsIncomplete(step.id, missing)

            now = utcnow()
            order_step.status = OrderStepStatus.COMPLETED if success else OrderStepStatus.FAILED
            order_step.completed_at = now
            order_step.notes = notes
            if context.executed_by:
                order_step.executed_by = context.executed_by
            next_step_id = None

            if not success:
                order_step.error_message = notes or "Step execution failed"
                change_order_status(
                    db,
                    order,
                    OrderStatus.FAILED,
                    context.executed_by,
                    reason=notes or f"Step '{step.name}' failed",
                    notes=notes,
                )
                message = "Step failed"
            else:
                remaining = (
                    await db.execute(
                        self._unfinished_steps_query(order).where(Step.sequence > step.sequence)
                    )
                ).scalars().all()
                if not remaining:
                    change_order_status(
                        db,
                        order,
                        OrderStatus.COMPLETED,
                        context.executed_by,
                        reason=f"Final step '{step.name}' completed",
                        notes=notes,
                    )
                    order.current_step_id = None
                    message = "Order completed"
                else:
                    next_step = remaining[0]
                    order.current_step_id = next_step.id
                    order.current_station_id = next_step.workstation_id
                    next_step_id = next_step.id
                    message = "Step completed"
            order.updated_at = now

            result = StepExecutionResult(
                order_id=order.id,
                step_id=step.id,
                order_step_id=order_step.id,
                order_status=order.status,
                step_status=order_step.status,
                message=message,
                started_at=order_step.started_at,
                completed_at=now,
                next_step_id=next_step_id,
                completed_actions=len(succeeded),
                total_actions=len(actions),
            )

        logger.info(
            f"Order {context.order_id}: step {context.step_id} "
            f"{'completed' if success else 'failed'}; order is {result.order_status.value}"
        )
        return result

    # --- Actions --- #
    async def execute_action(
        self,
        context: StepExecutionContext,
        action_id: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> ActionExecutionResult:
        """
        Run exactly one attempt of an action and log it.

        Gateway timeouts, gateway errors, device-reported failures and
        validation mismatches are returned as a failed result with an
        ActionLog row; they are not raised. The result carries ``attempt``,
        ``retryable`` and ``retries_remaining`` so the caller can decide to
        try again.

        Raises:
            ActionNotFound, DeviceNotConfigured, StepStateError and the
            context errors of ``start_step_execution``; nothing is logged then
        """
        parameters = dict(parameters or {})
        plan = await self._plan_action(context, action_id)

        started = time.monotonic()
        if plan.action_type.is_device_bound:
            outcome = await self._execute_device_action(plan, parameters)
        else:
            outcome = await self._execute_local_action(plan, parameters)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        async with self.database.transaction() as db:
            # Attempts on one order serialize on the order row
            await lock_order(db, plan.order_id)
            attempt = await self._next_attempt(db, plan)
            log = ActionLog(
                action_id=plan.action_id,
                order_step_id=plan.order_step_id,
                device_id=plan.device_id,
                status=ActionLogStatus.SUCCESS if outcome.success else ActionLogStatus.FAILED,
                executed_by=context.executed_by,
                executed_at=utcnow(),
                attempt=attempt,
                parameters=parameters,
                request_payload=outcome.request_payload,
                response_payload=outcome.response_payload,
                actual_value=None if outcome.actual_value is None else str(outcome.actual_value),
                validation_result=outcome.validation_result,
                execution_time_ms=elapsed_ms,
                error_code=outcome.error_code,
                error_message=outcome.error_message,
            )
            db.add(log)
            await db.flush()
            log_id = log.id
            executed_at = log.executed_at

        ACTION_EXECUTIONS.labels(
            action_type=plan.action_type.value, status="SUCCESS" if outcome.success else "FAILED"
        ).inc()
        if outcome.success:
            logger.info(
                f"Action {plan.action_name} ({plan.action_type.value}) succeeded "
                f"in {elapsed_ms} ms, attempt {attempt}"
            )
        else:
            logger.warning(
                f"Action {plan.action_name} ({plan.action_type.value}) failed "
                f"on attempt {attempt}: {outcome.error_message}"
            )

        return ActionExecutionResult(
            action_id=plan.action_id,
            order_step_id=plan.order_step_id,
            action_type=plan.action_type,
            action_log_id=log_id,
            success=outcome.success,
            attempt=attempt,
            retryable=(not outcome.success) and outcome.retryable,
            retries_remaining=max(0, plan.retry_count + 1 - attempt),
            actual_value=outcome.actual_value,
            validation_result=outcome.validation_result,
            execution_time_ms=elapsed_ms,
            error_code=outcome.error_code,
            error_message=outcome.error_message,
            response=outcome.response_payload,
            executed_at=executed_at,
        )

    async def _next_attempt(self, db: AsyncSession, plan: _ActionPlan) -> int:
        previous = (
            await db.execute(
                select(func.count(ActionLog.id)).where(
                    ActionLog.action_id == plan.action_id,
                    ActionLog.order_step_id == plan.order_step_id,
                )
            )
        ).scalar_one()
        return previous + 1

    async def _plan_action(self, context: StepExecutionContext, action_id: str) -> _ActionPlan:
        async with self.database.read() as db:
            _, order, step = await self._resolve(db, context, lock=False)

            action = await db.get(Action, action_id)
            if action is None or action.step_id != step.id:
                raise ActionNotFound(action_id, f"Action {action_id} not found in step {step.id}")

            order_step = await self._get_order_step(db, order.id, step.id)
            if order_step is None or order_step.status != OrderStepStatus.IN_PROGRESS:
                raise StepStateError(
                    f"Step {step.name} must be started before executing its actions",
                    stepId=step.id,
                )

            device = await db.get(Device, action.device_id) if action.device_id else None
            if action.action_type.is_device_bound and (device is None or not action.device_address):
                raise DeviceNotConfigured(action.id)

            plan = _ActionPlan(
                action_id=action.id,
                action_name=action.name,
                action_type=action.action_type,
                order_id=order.id,
                order_step_id=order_step.id,
                retry_count=action.retry_count or 0,
                device_address=action.device_address,
                data_type=action.data_type or "BOOL",
                expected_value=action.expected_value,
                validation_rule=action.validation_rule,
                timeout_ms=action.timeout_ms,
            )
            if device is not None:
                plan.device_id = device.id
                plan.device_code = device.device_code
                plan.device_type = device.device_type
                plan.device_brand = device.brand
                plan.ip_address = device.ip_address
                plan.port = device.port
                plan.protocol = device.protocol
            return plan

    async def _execute_device_action(self, plan: _ActionPlan, parameters: Dict[str, Any]) -> _Outcome:
        """Dispatch a DEVICE_READ or DEVICE_WRITE to the Device Gateway"""
        is_write = plan.action_type == ActionType.DEVICE_WRITE
        value = None
        if is_write:
            value = parameters.get("value", plan.expected_value or "1")

        request = DeviceOperationRequest(
            device_id=plan.device_code or plan.device_id,
            device_type=plan.device_type or "PLC",
            device_info=DeviceInfo(
                ip_address=plan.ip_address,
                port=plan.port,
                plc_type=plan.device_brand or plan.device_type,
                protocol=plan.protocol or "TCP/IP",
            ),
            operation=DeviceOperation(
                type=plan.action_type.value,
                address=plan.device_address,
                value=value,
                data_type=plan.data_type,
                parameters=parameters,
            ),
        )
        request_payload = request.to_wire()
        timeout = plan.timeout_ms / 1000.0 if plan.timeout_ms else None
        action_type = plan.action_type.value

        try:
            response = await self.gateway.execute(request, timeout=timeout)
        except DeviceUnavailable as e:
            DEVICE_DISPATCHES.labels(action_type=action_type, outcome="unavailable").inc()
            return _Outcome(
                success=False,
                request_payload=request_payload,
                response_payload={"error": e.message},
                error_code=e.error_code,
                error_message=e.message,
                retryable=True,
            )
        except DeviceGatewayError as e:
            DEVICE_DISPATCHES.labels(action_type=action_type, outcome="gateway_error").inc()
            return _Outcome(
                success=False,
                request_payload=request_payload,
                response_payload={"status": e.gateway_status, "body": e.body[:2000]},
                error_code=e.error_code,
                error_message=e.message,
                retryable=e.retryable,
            )

        response_payload = response.to_wire()
        if not response.success:
            DEVICE_DISPATCHES.labels(action_type=action_type, outcome="device_error").inc()
            return _Outcome(
                success=False,
                request_payload=request_payload,
                response_payload=response_payload,
                actual_value=response.value,
                error_code="DEVICE_ERROR",
                error_message=response.error or response.message or "Device operation failed",
                retryable=True,
            )

        actual = response.value
        if is_write:
            # The expected value is the write payload; only an explicit rule validates a write
            observed = actual if actual is not None else value
            passed, failure = validate_value(observed, None, plan.validation_rule)
        else:
            observed = actual
            passed, failure = validate_value(observed, plan.expected_value, plan.validation_rule)

        if passed is False:
            DEVICE_DISPATCHES.labels(action_type=action_type, outcome="validation_failed").inc()
            # A broken stored rule fails the same way on every attempt
            broken_rule = rule_error(plan.validation_rule, None if is_write else plan.expected_value)
            return _Outcome(
                success=False,
                request_payload=request_payload,
                response_payload=response_payload,
                actual_value=observed,
                validation_result=False,
                error_code="VALIDATION_FAILED",
                error_message=failure,
                retryable=broken_rule is None,
            )

        DEVICE_DISPATCHES.labels(action_type=action_type, outcome="success").inc()
        return _Outcome(
            success=True,
            request_payload=request_payload,
            response_payload=response_payload,
            actual_value=observed,
            validation_result=passed,
        )

    async def _execute_local_action(self, plan: _ActionPlan, parameters: Dict[str, Any]) -> _Outcome:
        handlers = {
            ActionType.MANUAL_CONFIRM: self._execute_manual_confirm_action,
            ActionType.DATA_VALIDATION: self._execute_data_validation_action,
            ActionType.BARCODE_SCAN: self._execute_barcode_scan_action,
            ActionType.CAMERA_CHECK: self._execute_camera_check_action,
            ActionType.DELAY_WAIT: self._execute_delay_wait_action,
        }
        handler = handlers[plan.action_type]
        return await handler(plan, parameters)

    async def _execute_manual_confirm_action(self, plan: _ActionPlan, parameters: Dict[str, Any]) -> _Outcome:
        confirmed = parameters.get("confirmed") is True
        return _Outcome(
            success=confirmed,
            request_payload={"type": plan.action_type.value},
            response_payload={"confirmed": confirmed},
            actual_value="confirmed" if confirmed else "rejected",
            validation_result=confirmed,
            error_code=None if confirmed else "NOT_CONFIRMED",
            error_message=None if confirmed else "Operator did not confirm the action",
        )

    async def _execute_data_validation_action(self, plan: _ActionPlan, parameters: Dict[str, Any]) -> _Outcome:
        value = parameters.get("value")
        request_payload = {"type": plan.action_type.value, "expectedValue": plan.expected_value}
        if value is None:
            return _Outcome(
                success=False,
                request_payload=request_payload,
                validation_result=False,
                error_code="VALIDATION_FAILED",
                error_message="No value supplied for validation",
            )
        passed, failure = validate_value(value, plan.expected_value, plan.validation_rule)
        ok = passed is not False
        return _Outcome(
            success=ok,
            request_payload=request_payload,
            response_payload={"value": value},
            actual_value=value,
            validation_result=ok,
            error_code=None if ok else "VALIDATION_FAILED",
            error_message=failure,
        )

    async def _execute_barcode_scan_action(self, plan: _ActionPlan, parameters: Dict[str, Any]) -> _Outcome:
        scanned = parameters.get("scannedValue") or parameters.get("barcode")
        request_payload = {"type": plan.action_type.value, "pattern": plan.expected_value}
        if not scanned:
            return _Outcome(
                success=False,
                request_payload=request_payload,
                validation_result=False,
                error_code="NO_BARCODE",
                error_message="No barcode value received",
            )
        rule = plan.validation_rule
        if not rule and plan.expected_value:
            rule = {"type": "regex", "pattern": plan.expected_value}
        passed, failure = validate_value(scanned, None, rule)
        ok = passed is not False
        return _Outcome(
            success=ok,
            request_payload=request_payload,
            response_payload={"scannedValue": scanned},
            actual_value=scanned,
            validation_result=ok,
            error_code=None if ok else "VALIDATION_FAILED",
            error_message=failure,
        )

    async def _execute_camera_check_action(self, plan: _ActionPlan, parameters: Dict[str, Any]) -> _Outcome:
        check_result = parameters.get("checkResult")
        confidence = parameters.get("confidence", 0)
        passed = check_result == "pass"
        return _Outcome(
            success=passed,
            request_payload={"type": plan.action_type.value},
            response_payload={"checkResult": check_result, "confidence": confidence},
            actual_value=check_result or "unknown",
            validation_result=passed,
            error_code=None if passed else "CAMERA_CHECK_FAILED",
            error_message=None if passed else f"Camera check result: {check_result or 'unknown'}",
        )

    async def _execute_delay_wait_action(self, plan: _ActionPlan, parameters: Dict[str, Any]) -> _Outcome:
        requested = parameters.get("delayTime") or plan.timeout_ms or DEFAULT_DELAY_MS
        request_payload = {"type": plan.action_type.value, "delayTime": requested}
        try:
            delay_ms = float(requested)
        except (TypeError, ValueError):
            delay_ms = -1.0
        if not math.isfinite(delay_ms) or delay_ms < 0:
            return _Outcome(
                success=False,
                request_payload=request_payload,
                validation_result=False,
                error_code="INVALID_PARAMETER",
                error_message=f"delayTime must be a non-negative number of milliseconds, got {requested!r}",
            )

        # Never wait longer than the action's timeout
        delay_ms = min(delay_ms, float(plan.timeout_ms or MAX_DELAY_MS))
        if delay_ms.is_integer():
            delay_ms = int(delay_ms)
        await asyncio.sleep(delay_ms / 1000.0)
        return _Outcome(
            success=True,
            request_payload=request_payload,
            response_payload={"waited": delay_ms},
            actual_value=f"waited_{delay_ms}ms",
        )

    # --- Read-only projections --- #
    async def get_workflow_execution_state(
        self, order_id: str, history_limit: Optional[int] = None
    ) -> WorkflowExecutionState:
        """Status, position and recent history of an order; never writes"""
        async with self.database.read() as db:
            order = await db.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id)

            # Dangling references are masked here and repaired by the next mutation
            current_step = await db.get(Step, order.current_step_id) if order.current_step_id else None
            station = (
                await db.get(Workstation, order.current_station_id) if order.current_station_id else None
            )

            rows = (
                await db.execute(
                    select(OrderStep, Step)
                    .join(Step, OrderStep.step_id == Step.id)
                    .where(OrderStep.order_id == order.id)
                    .order_by(Step.sequence)
                )
            ).all()
            completed_steps = [s.id for record, s in rows if record.status == OrderStepStatus.COMPLETED]
            failed_steps = [s.id for record, s in rows if record.status == OrderStepStatus.FAILED]

            total_steps = (
                await db.execute(select(func.count(Step.id)).where(Step.process_id == order.process_id))
            ).scalar_one()
            total_actions = (
                await db.execute(
                    select(func.count(Action.id))
                    .join(Step, Action.step_id == Step.id)
                    .where(Step.process_id == order.process_id)
                )
            ).scalar_one()
            succeeded = (
                await db.execute(
                    select(ActionLog.order_step_id, ActionLog.action_id)
                    .join(OrderStep, ActionLog.order_step_id == OrderStep.id)
                    .where(
                        OrderStep.order_id == order.id,
                        ActionLog.status == ActionLogStatus.SUCCESS,
                    )
                    .distinct()
                )
            ).all()
            succeeded_pairs = {(row[0], row[1]) for row in succeeded}

            current_action_id = None
            if current_step is not None and not order.status.is_terminal:
                current_order_step = next((record for record, s in rows if s.id == current_step.id), None)
                actions = (
                    await db.execute(
                        select(Action.id).where(Action.step_id == current_step.id).order_by(Action.sequence)
                    )
                ).scalars().all()
                for candidate in actions:
                    key = (current_order_step.id if current_order_step else None, candidate)
                    if key not in succeeded_pairs:
                        current_action_id = candidate
                        break

            history_rows = (
                await db.execute(
                    select(OrderStatusHistory)
                    .where(OrderStatusHistory.order_id == order.id)
                    .order_by(OrderStatusHistory.changed_at.desc())
                    .limit(history_limit or self.history_limit)
                )
            ).scalars().all()

            return WorkflowExecutionState(
                order_id=order.id,
                order_number=order.order_number,
                status=order.status,
                current_step_id=current_step.id if current_step else None,
                current_station_id=station.id if station else None,
                current_action_id=current_action_id,
                completed_steps=completed_steps,
                failed_steps=failed_steps,
                total_steps=total_steps,
                completed_actions=len(succeeded_pairs),
                total_actions=total_actions,
                history=[StatusHistoryEntry.from_row(row) for row in history_rows],
            )

    async def get_workstation_tasks(
        self, workstation_id: str, limit: int = DEFAULT_TASK_LIMIT
    ) -> List[WorkstationTask]:
        """Open orders positioned at a workstation, most recently touched first"""
        async with self.database.read() as db:
            workstation = await find_workstation(db, workstation_id)
            rows = (
                await db.execute(
                    select(Order, Step)
                    .outerjoin(Step, Order.current_step_id == Step.id)
                    .where(
                        Order.current_station_id == workstation.id,
                        Order.status.in_([OrderStatus.PENDING, OrderStatus.IN_PROGRESS]),
                    )
                    .order_by(Order.updated_at.desc())
                    .limit(limit)
                )
            ).all()
            return [
                WorkstationTask(
                    order_id=order.id,
                    order_number=order.order_number,
                    production_number=order.production_number,
                    quantity=order.quantity,
                    status=order.status,
                    priority=order.priority or 0,
                    current_step_id=step.id if step else None,
                    current_step_name=step.name if step else None,
                    current_step_sequence=step.sequence if step else None,
                    updated_at=order.updated_at,
                )
                for order, step in rows
            ]

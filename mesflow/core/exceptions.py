"""MesFlow exception hierarchy.

Errors fall into three families so callers can tell them apart:

* validation errors: the request itself is invalid (missing entity,
  business-rule violation); never retried automatically.
* conflict errors: another operator or request got there first; the client
  should prompt the operator.
* infrastructure errors: a device or the database did not respond; the
  caller may retry.
"""

from datetime import datetime
from typing import Any, Dict, Optional


class MesError(Exception):
    """Base exception for all MesFlow errors."""

    error_code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False
    should_logout = False

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "error": self.error_code,
            "message": self.message,
        }
        if self.should_logout:
            payload["shouldLogout"] = True
        if self.retryable:
            payload["retryable"] = True
        payload.update(self.details)
        return payload


# --- Validation --- #


class ValidationError(MesError):
    """The request violates a business rule."""

    error_code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(ValidationError):
    error_code = "NOT_FOUND"
    status_code = 404


class OrderNotFound(NotFoundError):
    error_code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found", orderId=order_id)


class StepNotFound(NotFoundError):
    error_code = "STEP_NOT_FOUND"

    def __init__(self, step_id: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Step {step_id} not found", stepId=step_id)


class ActionNotFound(NotFoundError):
    error_code = "ACTION_NOT_FOUND"

    def __init__(self, action_id: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Action {action_id} not found", actionId=action_id)


class WorkstationNotFound(NotFoundError):
    error_code = "WORKSTATION_NOT_FOUND"

    def __init__(self, workstation_id: str) -> None:
        super().__init__(f"Workstation {workstation_id} not found", workstationId=workstation_id)


class WorkstationMismatch(ValidationError):
    error_code = "WORKSTATION_MISMATCH"

    def __init__(self, step_id: str, workstation_id: str) -> None:
        super().__init__(
            f"Step {step_id} is not bound to workstation {workstation_id}",
            stepId=step_id,
            workstationId=workstation_id,
        )


class DeviceNotConfigured(ValidationError):
    error_code = "DEVICE_NOT_CONFIGURED"

    def __init__(self, action_id: str) -> None:
        super().__init__(
            f"Action {action_id} requires a device and a device address", actionId=action_id
        )


class InvalidStatusTransition(ValidationError):
    error_code = "INVALID_STATUS_TRANSITION"

    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Order status cannot change from {from_status} to {to_status}",
            fromStatus=from_status,
            toStatus=to_status,
        )


class OrderTerminal(ValidationError):
    error_code = "ORDER_TERMINAL"

    def __init__(self, order_id: str, status: str) -> None:
        super().__init__(
            f"Order {order_id} is already {status}", orderId=order_id, status=status
        )


class StepStateError(ValidationError):
    error_code = "STEP_STATE_ERROR"


class RequiredActionsIncomplete(ValidationError):
    error_code = "REQUIRED_ACTIONS_INCOMPLETE"

    def __init__(self, step_id: str, action_ids: list) -> None:
        super().__init__(
            f"Step {step_id} has required actions without a successful execution",
            stepId=step_id,
            actionIds=action_ids,
        )


# --- Conflicts and session termination --- #


class ConflictError(MesError):
    error_code = "CONFLICT"
    status_code = 409


class SessionConflict(ConflictError):
    error_code = "SESSION_CONFLICT"

    def __init__(self, workstation_id: str, active_session: Optional[Dict[str, Any]] = None) -> None:
        details: Dict[str, Any] = {"workstationId": workstation_id}
        if active_session is not None:
            details["activeSession"] = active_session
        super().__init__(f"Workstation {workstation_id} already has an active session", **details)


class SessionNotFound(MesError):
    """The session does not exist or is no longer active; the client must log out."""

    error_code = "SESSION_TERMINATED"
    status_code = 404
    should_logout = True

    def __init__(self, session_id: str) -> None:
        super().__init__(
            "Session not found or has been terminated", sessionId=session_id
        )


class SessionTakenOver(MesError):
    """Another operator took over the workstation; the client must stop working immediately."""

    error_code = "SESSION_TAKEN_OVER"
    status_code = 403
    should_logout = True

    def __init__(self, session_id: str, taken_over_by: Optional[str], taken_over_at: Optional[datetime]) -> None:
        self.taken_over_by = taken_over_by
        self.taken_over_at = taken_over_at
        super().__init__(
            f"Session has been taken over by {taken_over_by or 'another user'}",
            sessionId=session_id,
            takenOverBy=taken_over_by,
            takenOverAt=taken_over_at.isoformat() if taken_over_at else None,
        )


# --- Infrastructure --- #


class InfrastructureError(MesError):
    error_code = "INFRASTRUCTURE_ERROR"
    status_code = 503
    retryable = True


class DeviceUnavailable(InfrastructureError):
    """The Device Gateway was unreachable or did not answer in time."""

    error_code = "DEVICE_UNAVAILABLE"
    status_code = 504


class DeviceGatewayError(InfrastructureError):
    """The Device Gateway answered with a non-2xx status."""

    error_code = "DEVICE_GATEWAY_ERROR"
    status_code = 502

    def __init__(self, message: str, gateway_status: int, body: str = "") -> None:
        self.gateway_status = gateway_status
        self.body = body
        super().__init__(message, gatewayStatus=gateway_status)
        self.retryable = gateway_status >= 500


class PersistenceError(InfrastructureError):
    error_code = "PERSISTENCE_ERROR"

from fastapi import Request

from ..core.config import Settings
from ..core.process.order_status import OrderService
from ..core.process.retry import ActionRetryRunner
from ..core.process.workflow_engine import WorkflowExecutionEngine
from ..core.session.manager import SessionManager

# Service instances are built once by ``create_app`` and kept on ``app.state``;
# tests replace these getters through ``app.dependency_overrides``.


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session_manager(request: Request) -> SessionManager:
    """Get the session manager instance"""
    return request.app.state.session_manager


def get_workflow_engine(request: Request) -> WorkflowExecutionEngine:
    """Get the workflow execution engine instance"""
    return request.app.state.workflow_engine


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service


def get_retry_runner(request: Request) -> ActionRetryRunner:
    return request.app.state.retry_runner

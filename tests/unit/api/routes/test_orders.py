from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from mesflow.api.dependencies import get_order_service, get_workflow_engine
from mesflow.api.main import create_app
from mesflow.core.config import Settings
from mesflow.core.database.models import OrderStatus
from mesflow.core.exceptions import ConflictError, OrderNotFound, OrderTerminal
from mesflow.core.process.order_status import OrderService, OrderSummary, StatusHistoryEntry
from mesflow.core.process.workflow_engine import WorkflowExecutionEngine, WorkflowExecutionState

NOW = datetime(2026, 3, 2, 8, 30, 0)


@pytest.fixture
def app():
    return create_app(Settings(database_url="sqlite+aiosqlite:///:memory:"))


@pytest.fixture
def mock_order_service(app):
    service = AsyncMock(spec=OrderService)
    app.dependency_overrides[get_order_service] = lambda: service
    yield service
    app.dependency_overrides.clear()


@pytest.fixture
def mock_engine(app):
    engine = AsyncMock(spec=WorkflowExecutionEngine)
    app.dependency_overrides[get_workflow_engine] = lambda: engine
    yield engine
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)


def order_summary(status=OrderStatus.PENDING):
    return OrderSummary(
        id="ord-1",
        order_number="ORD-0001",
        production_number="PN-1",
        quantity=5,
        status=status,
        process_id="proc-1",
        current_step_id="step-1",
        current_station_id="ws-uuid-1",
        created_at=NOW,
        started_at=None,
        completed_at=None,
        updated_at=NOW,
    )


def history_entry(from_status, to_status, reason=None):
    return StatusHistoryEntry(
        id=f"hist-{to_status.value}",
        order_id="ord-1",
        from_status=from_status,
        to_status=to_status,
        changed_by="supervisor",
        changed_at=NOW,
        reason=reason,
    )


# --- Orders --- #


def test_create_order(client, mock_order_service):
    mock_order_service.create_order.return_value = order_summary()

    response = client.post(
        "/api/orders",
        json={"orderNumber": "ORD-0001", "processId": "proc-1", "quantity": 5, "productionNumber": "PN-1"},
    )

    assert response.status_code == 201
    assert response.json()["data"]["orderNumber"] == "ORD-0001"
    mock_order_service.create_order.assert_awaited_once_with(
        order_number="ORD-0001",
        process_id="proc-1",
        quantity=5,
        production_number="PN-1",
        priority=0,
        created_by=None,
    )


def test_create_order_rejects_zero_quantity(client, mock_order_service):
    response = client.post(
        "/api/orders", json={"orderNumber": "ORD-0001", "processId": "proc-1", "quantity": 0}
    )
    assert response.status_code == 422
    mock_order_service.create_order.assert_not_awaited()


def test_create_duplicate_order(client, mock_order_service):
    mock_order_service.create_order.side_effect = ConflictError("Order ORD-0001 already exists")

    response = client.post("/api/orders", json={"orderNumber": "ORD-0001", "processId": "proc-1"})

    assert response.status_code == 409
    assert response.json()["error"] == "CONFLICT"


def test_get_unknown_order(client, mock_order_service):
    mock_order_service.get_order.side_effect = OrderNotFound("missing")

    response = client.get("/api/orders/missing")

    assert response.status_code == 404
    assert response.json() == {
        "success": False,
        "error": "ORDER_NOT_FOUND",
        "message": "Order missing not found",
        "orderId": "missing",
    }


def test_cancel_order(client, mock_order_service):
    mock_order_service.cancel_order.return_value = order_summary(OrderStatus.CANCELLED)

    response = client.post(
        "/api/orders/ord-1/cancel", json={"changedBy": "supervisor", "reason": "Customer withdrew"}
    )

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "CANCELLED"
    mock_order_service.cancel_order.assert_awaited_once_with("ord-1", "supervisor", "Customer withdrew")


def test_cancel_terminal_order(client, mock_order_service):
    mock_order_service.cancel_order.side_effect = OrderTerminal("ord-1", "COMPLETED")

    response = client.post("/api/orders/ord-1/cancel", json={})

    assert response.status_code == 400
    assert response.json()["error"] == "ORDER_TERMINAL"


def test_order_history(client, mock_order_service):
    mock_order_service.get_status_history.return_value = [
        history_entry(OrderStatus.PENDING, OrderStatus.CANCELLED, "Customer withdrew"),
        history_entry(None, OrderStatus.PENDING, "Order created"),
    ]

    response = client.get("/api/orders/ord-1/history?limit=2")

    entries = response.json()["data"]
    assert [e["toStatus"] for e in entries] == ["CANCELLED", "PENDING"]
    assert entries[1]["fromStatus"] is None
    mock_order_service.get_status_history.assert_awaited_once_with("ord-1", 2)


# --- Workflow status --- #


def test_workflow_status(client, mock_engine):
    mock_engine.get_workflow_execution_state.return_value = WorkflowExecutionState(
        order_id="ord-1",
        order_number="ORD-0001",
        status=OrderStatus.IN_PROGRESS,
        current_step_id="step-2",
        current_station_id="ws-uuid-2",
        current_action_id="act-3",
        completed_steps=["step-1"],
        total_steps=2,
        completed_actions=2,
        total_actions=4,
        history=[history_entry(OrderStatus.PENDING, OrderStatus.IN_PROGRESS)],
    )

    response = client.get("/api/workflow/ord-1/status?historyLimit=5")

    data = response.json()["data"]
    assert data["status"] == "IN_PROGRESS"
    assert data["currentActionId"] == "act-3"
    assert data["progress"] == 50.0
    assert len(data["history"]) == 1
    mock_engine.get_workflow_execution_state.assert_awaited_once_with("ord-1", 5)


def test_workflow_status_unknown_order(client, mock_engine):
    mock_engine.get_workflow_execution_state.side_effect = OrderNotFound("missing")

    response = client.get("/api/workflow/missing/status")

    assert response.status_code == 404


# --- Application --- #


def test_health_check(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "X-Process-Time" in response.headers


def test_metrics_exposed(client):
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "mesflow_" in response.text


def test_unexpected_error_is_masked(app, mock_order_service):
    mock_order_service.get_order.side_effect = RuntimeError("boom")
    client = TestClient(app, raise_server_exceptions=False)

    response = client.get("/api/orders/ord-1")

    assert response.status_code == 500
    assert response.json()["error"] == "INTERNAL_ERROR"
    assert "boom" not in response.text

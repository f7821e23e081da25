import asyncio
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio

from mesflow.core.database.db import Database
from mesflow.core.database.models import (
    Action,
    ActionType,
    Device,
    Process,
    Step,
    Workstation,
)
from mesflow.core.devices.gateway import DeviceGatewayClient
from mesflow.core.process.order_status import OrderService
from mesflow.core.process.workflow_engine import WorkflowExecutionEngine
from mesflow.core.session.manager import SessionManager

GATEWAY_URL = "http://gateway.test/api"


def gateway_reply(value="1", success=True, **extra):
    body = {"success": success, "data": {"value": value, "status": "ok"}}
    body.update(extra)
    return httpx.Response(200, json=body)


class FakeGateway:
    """Records requests sent to the Device Gateway and answers with ``handler``"""

    def __init__(self):
        self.requests = []
        self.handler = lambda request: gateway_reply("1")

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        result = self.handler(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def requests_to(self, path: str):
        return [r for r in self.requests if r.url.path.endswith(path)]


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def gateway(fake_gateway):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_gateway), base_url=GATEWAY_URL)
    return DeviceGatewayClient(GATEWAY_URL, timeout=5.0, client=client)


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'mesflow.db'}")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def session_manager(database, gateway):
    return SessionManager(database, gateway)


@pytest.fixture
def engine(database, gateway):
    return WorkflowExecutionEngine(database, gateway)


@pytest.fixture
def order_service(database):
    return OrderService(database)


@pytest_asyncio.fixture
async def line(database, order_service):
    """
    Two workstations, one PLC and a two-step process with one PENDING order.

    Step 1 (WS-01): required DEVICE_READ expecting "1" (retry_count 2),
    optional MANUAL_CONFIRM.
    Step 2 (WS-02): optional DEVICE_WRITE, optional DEVICE_READ with no device.
    """
    async with database.transaction() as db:
        ws1 = Workstation(code="WS-01", name="Press station")
        ws2 = Workstation(code="WS-02", name="Test bench")
        process = Process(name="Motor assembly")
        db.add_all([ws1, ws2, process])
        await db.flush()

        plc = Device(
            device_code="PLC-01",
            name="Line PLC",
            device_type="PLC",
            brand="Siemens",
            ip_address="192.168.0.10",
            port=102,
            protocol="S7",
            workstation_id=ws1.id,
        )
        step1 = Step(process_id=process.id, workstation_id=ws1.id, sequence=1, name="Press fit")
        step2 = Step(process_id=process.id, workstation_id=ws2.id, sequence=2, name="Function test")
        db.add_all([plc, step1, step2])
        await db.flush()

        read = Action(
            step_id=step1.id,
            sequence=1,
            name="Check clamp",
            action_type=ActionType.DEVICE_READ,
            device_id=plc.id,
            device_address="M100",
            expected_value="1",
            retry_count=2,
        )
        confirm = Action(
            step_id=step1.id,
            sequence=2,
            name="Visual check",
            action_type=ActionType.MANUAL_CONFIRM,
            is_required=False,
        )
        write = Action(
            step_id=step2.id,
            sequence=1,
            name="Start test",
            action_type=ActionType.DEVICE_WRITE,
            device_id=plc.id,
            device_address="M200",
            expected_value="1",
            is_required=False,
        )
        unbound = Action(
            step_id=step2.id,
            sequence=2,
            name="Read torque",
            action_type=ActionType.DEVICE_READ,
            device_address="DB1.DBW0",
            is_required=False,
        )
        db.add_all([read, confirm, write, unbound])
        await db.flush()

        ids = SimpleNamespace(
            ws1=ws1.id,
            ws2=ws2.id,
            plc=plc.id,
            process=process.id,
            step1=step1.id,
            step2=step2.id,
            read=read.id,
            confirm=confirm.id,
            write=write.id,
            unbound=unbound.id,
        )

    order = await order_service.create_order("ORD-0001", ids.process, quantity=5, production_number="PN-77")
    ids.order = order.id
    return ids

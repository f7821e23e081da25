import asyncio
import json

import httpx
import pytest

from mesflow.core.devices.gateway import (
    DeviceGatewayClient,
    DeviceInfo,
    DeviceOperation,
    DeviceOperationRequest,
    DeviceOperationResponse,
)
from mesflow.core.exceptions import DeviceGatewayError, DeviceUnavailable

BASE_URL = "http://gateway.test/api"


def make_client(handler, timeout=5.0):
    transport = httpx.MockTransport(handler)
    return DeviceGatewayClient(
        BASE_URL, timeout=timeout, client=httpx.AsyncClient(transport=transport, base_url=BASE_URL)
    )


def make_request(**operation):
    return DeviceOperationRequest(
        device_id="PLC-01",
        device_type="PLC",
        device_info=DeviceInfo(ip_address="10.0.0.5", port=502, plc_type="Mitsubishi"),
        operation=DeviceOperation(type="DEVICE_READ", address="D100", **operation),
    )


def test_request_serialises_with_camel_case_keys():
    wire = make_request().to_wire()

    assert wire["deviceId"] == "PLC-01"
    assert wire["deviceInfo"] == {
        "ipAddress": "10.0.0.5",
        "port": 502,
        "plcType": "Mitsubishi",
        "protocol": "TCP/IP",
    }
    assert wire["operation"] == {
        "type": "DEVICE_READ",
        "address": "D100",
        "value": None,
        "dataType": "BOOL",
        "parameters": {},
    }


def test_response_parses_value_and_extra_fields():
    response = DeviceOperationResponse.model_validate(
        {"success": True, "data": {"value": 42, "status": "ok", "quality": "good"}}
    )
    assert response.value == 42
    assert response.to_wire()["data"]["quality"] == "good"
    assert DeviceOperationResponse.model_validate({"success": False}).value is None


@pytest.mark.asyncio
async def test_execute_posts_to_execute_endpoint():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": {"value": "1"}})

    client = make_client(handler)
    response = await client.execute(make_request())

    assert response.success
    assert response.value == "1"
    assert seen[0].url.path == "/api/devices/execute"
    assert json.loads(seen[0].content)["operation"]["address"] == "D100"


@pytest.mark.asyncio
async def test_execute_timeout_raises_device_unavailable():
    async def handler(request):
        await asyncio.sleep(1)
        return httpx.Response(200, json={"success": True})

    client = make_client(handler)
    with pytest.raises(DeviceUnavailable) as exc_info:
        await client.execute(make_request(), timeout=0.05)
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_execute_non_2xx_raises_gateway_error():
    client = make_client(lambda request: httpx.Response(502, text="upstream"))
    with pytest.raises(DeviceGatewayError) as exc_info:
        await client.execute(make_request())
    assert exc_info.value.gateway_status == 502
    assert exc_info.value.body == "upstream"
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_execute_unreadable_body():
    client = make_client(lambda request: httpx.Response(200, text="<html>"))
    with pytest.raises(DeviceGatewayError):
        await client.execute(make_request())


@pytest.mark.asyncio
async def test_session_notice_is_best_effort():
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    assert await make_client(lambda request: httpx.Response(200, json={})).notify_session_ended(
        "WS-01", "s-1", "forced_logout"
    )
    assert not await make_client(refuse).notify_session_ended("WS-01", "s-1", "forced_logout")
    assert not await make_client(lambda request: httpx.Response(500)).notify_session_ended(
        "WS-01", "s-1", "normal_logout"
    )

"""
Device Gateway client.

The Device Gateway is a separate service that performs one read or write
against a physical device (PLC, scanner, screwdriver controller) and answers
within a bounded time. This module holds its wire models and an async HTTP
client for it.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from ..exceptions import DeviceGatewayError, DeviceUnavailable
from ..metrics import DEVICE_DISPATCH_SECONDS

logger = logging.getLogger(__name__)

EXECUTE_PATH = "/devices/execute"
SESSION_LOGOUT_PATH = "/workstation/logout"


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DeviceInfo(_WireModel):
    ip_address: Optional[str] = Field(None, alias="ipAddress")
    port: Optional[int] = None
    plc_type: Optional[str] = Field(None, alias="plcType")
    protocol: str = "TCP/IP"


class DeviceOperation(_WireModel):
    type: str
    address: str
    value: Optional[Any] = None
    data_type: str = Field("BOOL", alias="dataType")
    parameters: Dict[str, Any] = Field(default_factory=dict)


class DeviceOperationRequest(_WireModel):
    device_id: str = Field(..., alias="deviceId")
    device_type: str = Field(..., alias="deviceType")
    device_info: DeviceInfo = Field(..., alias="deviceInfo")
    operation: DeviceOperation
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class DeviceResultData(_WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    value: Optional[Any] = None
    status: Optional[str] = None


class DeviceOperationResponse(_WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    success: bool = False
    data: Optional[DeviceResultData] = None
    message: Optional[str] = None
    error: Optional[str] = None

    @property
    def value(self) -> Optional[Any]:
        return self.data.value if self.data is not None else None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class DeviceGatewayClient:
    """Async HTTP client for the Device Gateway"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the client

        Args:
            base_url: Gateway base URL, e.g. ``http://localhost:5001/api``
            timeout: Total time budget in seconds for one gateway call
            client: Pre-built ``httpx.AsyncClient`` (tests inject a mock transport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=httpx.Timeout(timeout)
        )

    async def execute(
        self, request: DeviceOperationRequest, timeout: Optional[float] = None
    ) -> DeviceOperationResponse:
        """
        Execute one device operation

        Args:
            request: Operation to perform
            timeout: Override of the time budget for this call

        Returns:
            Parsed gateway response; ``success`` may still be False when the
            device reported a failure

        Raises:
            DeviceUnavailable: gateway unreachable or did not answer in time
            DeviceGatewayError: gateway answered with a non-2xx status or an
                unreadable body
        """
        budget = timeout if timeout is not None else self.timeout
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.post(EXECUTE_PATH, json=request.to_wire()),
                timeout=budget,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.warning(
                f"Device {request.device_id}: gateway did not answer within {budget:.1f}s"
            )
            raise DeviceUnavailable(
                f"Device gateway timed out after {budget:.1f}s", deviceId=request.device_id
            ) from e
        except httpx.TransportError as e:
            logger.warning(f"Device {request.device_id}: gateway unreachable: {e}")
            raise DeviceUnavailable(
                f"Device gateway unreachable: {e}", deviceId=request.device_id
            ) from e
        finally:
            DEVICE_DISPATCH_SECONDS.observe(time.monotonic() - started)

        if not response.is_success:
            body = response.text
            logger.warning(
                f"Device {request.device_id}: gateway returned {response.status_code}: {body[:200]}"
            )
            raise DeviceGatewayError(
                f"Device service error: {response.status_code}",
                gateway_status=response.status_code,
                body=body,
            )

        try:
            return DeviceOperationResponse.model_validate(response.json())
        except ValueError as e:
            raise DeviceGatewayError(
                f"Device service returned an unreadable response: {e}",
                gateway_status=response.status_code,
                body=response.text,
            ) from e

    async def notify_session_ended(
        self, workstation_code: str, session_id: str, reason: str
    ) -> bool:
        """
        Tell the gateway a workstation session ended so it can release devices.

        Best effort: failures are logged and reported as False, never raised.
        """
        payload = {"workstationId": workstation_code, "sessionId": session_id, "reason": reason}
        try:
            response = await asyncio.wait_for(
                self._client.post(SESSION_LOGOUT_PATH, json=payload), timeout=self.timeout
            )
        except (asyncio.TimeoutError, httpx.HTTPError) as e:
            logger.warning(f"Could not notify device gateway about session {session_id} ({reason}): {e}")
            return False
        if not response.is_success:
            logger.warning(
                f"Device gateway rejected session-ended notice for {session_id}: {response.status_code}"
            )
            return False
        return True

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

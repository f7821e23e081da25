"""
Device communication package for MesFlow.
"""

from .gateway import (
    DeviceGatewayClient,
    DeviceInfo,
    DeviceOperation,
    DeviceOperationRequest,
    DeviceOperationResponse,
)

__all__ = [
    "DeviceGatewayClient",
    "DeviceInfo",
    "DeviceOperation",
    "DeviceOperationRequest",
    "DeviceOperationResponse",
]

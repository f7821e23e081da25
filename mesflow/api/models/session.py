"""
Workstation session API models.
"""

from typing import Any, Dict, Optional

from pydantic import Field

from .common import CamelModel


class SessionCheckRequest(CamelModel):
    workstation_id: str = Field(..., alias="workstationId", min_length=1)


class LoginRequest(CamelModel):
    workstation_id: str = Field(..., alias="workstationId", min_length=1)
    username: str = Field(..., min_length=1)
    settings: Optional[Dict[str, Any]] = None


class HeartbeatRequest(CamelModel):
    session_id: str = Field(..., alias="sessionId", min_length=1)


class TakeoverRequest(CamelModel):
    workstation_id: str = Field(..., alias="workstationId", min_length=1)
    new_username: str = Field(..., alias="newUsername", min_length=1)
    force_logout: bool = Field(True, alias="forceLogout")


class LogoutRequest(CamelModel):
    """Identify the session either by its id or by its workstation"""

    session_id: Optional[str] = Field(None, alias="sessionId")
    workstation_id: Optional[str] = Field(None, alias="workstationId")
    username: Optional[str] = None

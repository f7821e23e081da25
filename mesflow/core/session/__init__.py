"""
Workstation session package for MesFlow.

Enforces exclusive operator occupancy of workstations.
"""

from .manager import (
    LogoutResult,
    SessionCheck,
    SessionInfo,
    SessionManager,
    TakeoverResult,
    ensure_session_active,
    find_workstation,
)
from .termination import Expired, LoggedOut, SessionTermination, TakenOver

__all__ = [
    "SessionManager",
    "SessionCheck",
    "SessionInfo",
    "LogoutResult",
    "TakeoverResult",
    "ensure_session_active",
    "find_workstation",
    "Expired",
    "LoggedOut",
    "TakenOver",
    "SessionTermination",
]

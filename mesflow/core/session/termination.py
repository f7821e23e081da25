"""Why a workstation session ended.

Storage keeps ``termination_reason`` and ``terminated_by`` as columns; these
variants are how the rest of the code reads them.
"""

from dataclasses import dataclass
from typing import Optional, Union

from ..database.models import TerminationReason, WorkstationSession


@dataclass(frozen=True)
class Expired:
    """No heartbeat within the session timeout"""

    reason = TerminationReason.EXPIRED


@dataclass(frozen=True)
class LoggedOut:
    by: Optional[str] = None

    reason = TerminationReason.LOGGED_OUT


@dataclass(frozen=True)
class TakenOver:
    by: Optional[str] = None

    reason = TerminationReason.TAKEN_OVER


SessionTermination = Union[Expired, LoggedOut, TakenOver]


def termination_of(session: WorkstationSession) -> Optional[SessionTermination]:
    """Read the termination variant of a session row; None while the session is open"""
    reason = session.termination_reason
    if reason is None:
        return None
    if reason == TerminationReason.EXPIRED:
        return Expired()
    if reason == TerminationReason.TAKEN_OVER:
        return TakenOver(by=session.terminated_by)
    return LoggedOut(by=session.terminated_by)


def apply_termination(session: WorkstationSession, termination: SessionTermination, at) -> None:
    """Close ``session`` with the given variant"""
    session.active = False
    session.logout_time = at
    session.termination_reason = termination.reason
    session.terminated_by = getattr(termination, "by", None)

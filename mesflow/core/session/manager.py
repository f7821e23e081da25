import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import DEFAULT_SESSION_TIMEOUT_SECONDS
from ..database.db import Database, on_commit
from ..database.models import Workstation, WorkstationSession, WorkstationStatus, utcnow
from ..devices.gateway import DeviceGatewayClient
from ..exceptions import (
    SessionConflict,
    SessionNotFound,
    SessionTakenOver,
    ValidationError,
    WorkstationNotFound,
)
from ..metrics import SESSION_EVENTS
from .termination import (
    Expired,
    LoggedOut,
    SessionTermination,
    TakenOver,
    apply_termination,
    termination_of,
)

logger = logging.getLogger(__name__)


@dataclass
class SessionInfo:
    """Snapshot of a workstation session row"""

    session_id: str
    workstation_id: str
    workstation_code: Optional[str]
    username: Optional[str]
    login_time: datetime
    last_activity: datetime
    logout_time: Optional[datetime] = None
    active: bool = True
    termination: Optional[SessionTermination] = None

    @classmethod
    def from_row(cls, row: WorkstationSession, workstation: Optional[Workstation] = None) -> "SessionInfo":
        return cls(
            session_id=row.session_id,
            workstation_id=row.workstation_id,
            workstation_code=workstation.code if workstation is not None else None,
            username=row.username,
            login_time=row.login_time,
            last_activity=row.last_activity,
            logout_time=row.logout_time,
            active=row.active,
            termination=termination_of(row),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "sessionId": self.session_id,
            "workstationId": self.workstation_code or self.workstation_id,
            "username": self.username,
            "loginTime": self.login_time.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
            "logoutTime": self.logout_time.isoformat() if self.logout_time else None,
            "active": self.active,
        }
        if self.termination is not None:
            data["terminationReason"] = self.termination.reason.value
            data["terminatedBy"] = getattr(self.termination, "by", None)
        return data


@dataclass
class SessionCheck:
    workstation_id: str
    has_active_session: bool
    active_session: Optional[SessionInfo] = None
    expired_session: Optional[SessionInfo] = None

    @property
    def can_login(self) -> bool:
        return not self.has_active_session

    @property
    def message(self) -> str:
        if self.has_active_session:
            return "Workstation has active session"
        if self.expired_session is not None:
            return "Previous session timeout, can login"
        return "No active session, can login"


@dataclass
class LogoutResult:
    logged_out: bool
    session: Optional[SessionInfo] = None
    gateway_notified: bool = False

    @property
    def message(self) -> str:
        return "Logout successful" if self.logged_out else "No active session found"


@dataclass
class TakeoverResult:
    taken_over: bool
    previous_session: Optional[SessionInfo] = None
    deposed_sessions: int = 0

    @property
    def can_proceed(self) -> bool:
        return self.taken_over or self.previous_session is None

    @property
    def message(self) -> str:
        if self.taken_over:
            return "Previous session terminated successfully"
        if self.previous_session is None:
            return "No active session found, can proceed with login"
        return "Takeover not executed"


async def find_workstation(db: AsyncSession, ref: str, lock: bool = False) -> Workstation:
    """Look a workstation up by its code or its primary key"""
    query = select(Workstation).where(or_(Workstation.code == ref, Workstation.id == ref))
    if lock:
        query = query.with_for_update()
    workstation = (await db.execute(query)).scalars().first()
    if workstation is None:
        raise WorkstationNotFound(ref)
    return workstation


async def ensure_session_active(db: AsyncSession, session_id: str, workstation: Workstation) -> WorkstationSession:
    """Raise unless ``session_id`` is the open session on ``workstation``"""
    row = (
        await db.execute(select(WorkstationSession).where(WorkstationSession.session_id == session_id))
    ).scalars().first()
    if row is None:
        raise SessionNotFound(session_id)
    termination = termination_of(row)
    if isinstance(termination, TakenOver):
        raise SessionTakenOver(session_id, termination.by, row.logout_time)
    if not row.active or row.logout_time is not None or row.workstation_id != workstation.id:
        raise SessionNotFound(session_id)
    return row


class SessionManager:
    """Guarantees at most one open operator session per workstation.

    Every check-then-act runs in one database transaction; the workstation
    row is locked for the duration so concurrent callers serialize.
    """

    def __init__(
        self,
        database: Database,
        gateway: Optional[DeviceGatewayClient] = None,
        session_timeout: timedelta = timedelta(seconds=DEFAULT_SESSION_TIMEOUT_SECONDS),
    ):
        self.database = database
        self.gateway = gateway
        self.session_timeout = session_timeout

    def is_expired(self, row: WorkstationSession, now: datetime) -> bool:
        return now - row.last_activity > self.session_timeout

    async def _open_sessions(self, db: AsyncSession, workstation: Workstation) -> List[WorkstationSession]:
        query = (
            select(WorkstationSession)
            .where(
                WorkstationSession.workstation_id == workstation.id,
                WorkstationSession.active.is_(True),
                WorkstationSession.logout_time.is_(None),
            )
            .order_by(WorkstationSession.login_time.desc())
            .with_for_update()
        )
        return list((await db.execute(query)).scalars().all())

    async def _sweep(
        self, db: AsyncSession, workstation: Workstation, now: datetime
    ) -> Tuple[Optional[WorkstationSession], Optional[WorkstationSession]]:
        """Expire timed-out sessions; return (live session, last expired session)"""
        live = None
        expired = None
        for row in await self._open_sessions(db, workstation):
            if self.is_expired(row, now):
                apply_termination(row, Expired(), now)
                expired = row
                on_commit(db, SESSION_EVENTS.labels(event="expired").inc)
                logger.info(
                    f"Session {row.session_id} on workstation {workstation.code} expired "
                    f"(last activity {row.last_activity.isoformat()})"
                )
            elif live is None:
                live = row
        return live, expired

    async def check_session(self, workstation_id: str) -> SessionCheck:
        """
        Report whether an operator can log in to a workstation.

        An open session older than the timeout is closed as expired in the
        same transaction, so two callers never both see a stale session as
        blocking or both see the workstation as free while it is not.
        """
        async with self.database.transaction() as db:
            workstation = await find_workstation(db, workstation_id, lock=True)
            now = utcnow()
            live, expired = await self._sweep(db, workstation, now)
            return SessionCheck(
                workstation_id=workstation.code,
                has_active_session=live is not None,
                active_session=SessionInfo.from_row(live, workstation) if live else None,
                expired_session=SessionInfo.from_row(expired, workstation) if expired else None,
            )

    async def login(
        self, workstation_id: str, username: Optional[str], settings: Optional[Dict[str, Any]] = None
    ) -> SessionInfo:
        """
        Open a new session on a workstation.

        Raises:
            WorkstationNotFound: unknown workstation
            SessionConflict: another session is open, or became open concurrently
        """
        async with self.database.transaction() as db:
            workstation = await find_workstation(db, workstation_id, lock=True)
            now = utcnow()
            live, _ = await self._sweep(db, workstation, now)
            if live is not None:
                SESSION_EVENTS.labels(event="login_conflict").inc()
                raise SessionConflict(workstation.code, SessionInfo.from_row(live, workstation).to_dict())

            row = WorkstationSession(
                workstation_id=workstation.id,
                username=username,
                login_time=now,
                last_activity=now,
                active=True,
                settings=settings or {},
            )
            db.add(row)
            try:
                await db.flush()
            except IntegrityError as e:
                SESSION_EVENTS.labels(event="login_conflict").inc()
                raise SessionConflict(workstation.code) from e

            workstation.status = WorkstationStatus.ONLINE
            workstation.last_connected = now
            info = SessionInfo.from_row(row, workstation)

        SESSION_EVENTS.labels(event="login").inc()
        logger.info(f"User {username} logged in to workstation {info.workstation_code} (session {info.session_id})")
        return info

    async def heartbeat(self, session_id: str) -> SessionInfo:
        """
        Record client activity on a session.

        Raises:
            SessionTakenOver: another operator took the workstation over
            SessionNotFound: the session is unknown, closed or timed out
        """
        async with self.database.transaction() as db:
            row = (
                await db.execute(
                    select(WorkstationSession)
                    .where(WorkstationSession.session_id == session_id)
                    .with_for_update()
                )
            ).scalars().first()
            if row is None:
                raise SessionNotFound(session_id)

            termination = termination_of(row)
            if isinstance(termination, TakenOver):
                SESSION_EVENTS.labels(event="heartbeat_taken_over").inc()
                raise SessionTakenOver(session_id, termination.by, row.logout_time)
            if not row.active or row.logout_time is not None:
                raise SessionNotFound(session_id)

            now = utcnow()
            if self.is_expired(row, now):
                apply_termination(row, Expired(), now)
                on_commit(db, SESSION_EVENTS.labels(event="expired").inc)
                logger.info(f"Session {session_id} expired before heartbeat")
                expired = True
            else:
                row.last_activity = now
                expired = False
            info = SessionInfo.from_row(row, await db.get(Workstation, row.workstation_id))

        # Raised after commit so the expiry is persisted
        if expired:
            raise SessionNotFound(session_id)
        return info

    async def logout(
        self,
        session_id: Optional[str] = None,
        workstation_id: Optional[str] = None,
        username: Optional[str] = None,
    ) -> LogoutResult:
        """
        Close a session, identified either by session id or by workstation.

        Idempotent: when no matching open session exists the call succeeds
        without changes.
        """
        if not session_id and not workstation_id:
            raise ValidationError("SessionId or WorkstationId is required")

        async with self.database.transaction() as db:
            if session_id:
                row = (
                    await db.execute(
                        select(WorkstationSession)
                        .where(
                            WorkstationSession.session_id == session_id,
                            WorkstationSession.active.is_(True),
                            WorkstationSession.logout_time.is_(None),
                        )
                        .with_for_update()
                    )
                ).scalars().first()
                workstation = await db.get(Workstation, row.workstation_id) if row else None
            else:
                workstation = await find_workstation(db, workstation_id, lock=True)
                open_rows = await self._open_sessions(db, workstation)
                row = open_rows[0] if open_rows else None

            if row is None:
                return LogoutResult(logged_out=False)

            apply_termination(row, LoggedOut(by=username or row.username), utcnow())
            if workstation is not None:
                workstation.status = WorkstationStatus.OFFLINE
            info = SessionInfo.from_row(row, workstation)

        SESSION_EVENTS.labels(event="logout").inc()
        logger.info(f"Session {info.session_id} logged out from workstation {info.workstation_code}")
        notified = await self._notify_gateway(info, "normal_logout")
        return LogoutResult(logged_out=True, session=info, gateway_notified=notified)

    async def takeover(
        self, workstation_id: str, new_username: Optional[str], force_logout: bool = True
    ) -> TakeoverResult:
        """
        Force the open session(s) on a workstation closed so a new operator can log in.

        With ``force_logout=False`` this is a dry run that reports the
        conflicting session without changing anything.
        """
        async with self.database.transaction() as db:
            workstation = await find_workstation(db, workstation_id, lock=True)
            open_rows = await self._open_sessions(db, workstation)
            if not open_rows:
                return TakeoverResult(taken_over=False)

            primary = open_rows[0]
            if not force_logout:
                return TakeoverResult(
                    taken_over=False, previous_session=SessionInfo.from_row(primary, workstation)
                )

            now = utcnow()
            for row in open_rows:
                apply_termination(row, TakenOver(by=new_username), now)
            previous = SessionInfo.from_row(primary, workstation)

        SESSION_EVENTS.labels(event="taken_over").inc(len(open_rows))
        logger.info(
            f"Workstation {workstation.code}: {new_username} took over from "
            f"{previous.username} (session {previous.session_id}, {len(open_rows)} session(s) closed)"
        )
        await self._notify_gateway(previous, "forced_logout")
        return TakeoverResult(taken_over=True, previous_session=previous, deposed_sessions=len(open_rows))

    async def _notify_gateway(self, info: SessionInfo, reason: str) -> bool:
        if self.gateway is None:
            return False
        return await self.gateway.notify_session_ended(
            info.workstation_code or info.workstation_id, info.session_id, reason
        )

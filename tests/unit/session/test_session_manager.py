import asyncio
import json
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import func, select

from mesflow.core.database.models import (
    TerminationReason,
    Workstation,
    WorkstationSession,
    WorkstationStatus,
    utcnow,
)
from mesflow.core.exceptions import (
    SessionConflict,
    SessionNotFound,
    SessionTakenOver,
    ValidationError,
    WorkstationNotFound,
)
from mesflow.core.session import Expired, LoggedOut, TakenOver


async def open_session_count(database, workstation_id):
    async with database.read() as db:
        return (
            await db.execute(
                select(func.count(WorkstationSession.id)).where(
                    WorkstationSession.workstation_id == workstation_id,
                    WorkstationSession.active.is_(True),
                    WorkstationSession.logout_time.is_(None),
                )
            )
        ).scalar_one()


async def age_session(database, session_id, hours):
    async with database.transaction() as db:
        row = (
            await db.execute(select(WorkstationSession).where(WorkstationSession.session_id == session_id))
        ).scalars().one()
        row.last_activity = utcnow() - timedelta(hours=hours)


@pytest.mark.asyncio
async def test_check_session_on_free_workstation(session_manager, line):
    check = await session_manager.check_session("WS-01")
    assert check.can_login
    assert check.active_session is None
    assert check.message == "No active session, can login"


@pytest.mark.asyncio
async def test_unknown_workstation(session_manager, line):
    with pytest.raises(WorkstationNotFound):
        await session_manager.check_session("WS-99")


@pytest.mark.asyncio
async def test_login_marks_workstation_online(session_manager, database, line):
    info = await session_manager.login("WS-01", "alice")

    assert info.username == "alice"
    assert info.workstation_code == "WS-01"
    async with database.read() as db:
        workstation = await db.get(Workstation, line.ws1)
        assert workstation.status == WorkstationStatus.ONLINE
        assert workstation.last_connected is not None

    check = await session_manager.check_session(line.ws1)
    assert check.has_active_session
    assert check.active_session.session_id == info.session_id


@pytest.mark.asyncio
async def test_second_login_conflicts(session_manager, database, line):
    await session_manager.login("WS-01", "alice")

    with pytest.raises(SessionConflict) as exc_info:
        await session_manager.login("WS-01", "bob")

    assert exc_info.value.details["activeSession"]["username"] == "alice"
    assert await open_session_count(database, line.ws1) == 1


@pytest.mark.asyncio
async def test_concurrent_logins_yield_exactly_one_session(session_manager, database, line):
    results = await asyncio.gather(
        session_manager.login("WS-01", "alice"),
        session_manager.login("WS-01", "bob"),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    conflicts = [r for r in results if isinstance(r, SessionConflict)]
    assert len(successes) == 1
    assert len(conflicts) == 1
    assert await open_session_count(database, line.ws1) == 1


@pytest.mark.asyncio
async def test_takeover_racing_heartbeat_of_deposed_session(session_manager, database, line):
    alice = await session_manager.login("WS-01", "alice")

    takeover, heartbeat = await asyncio.gather(
        session_manager.takeover("WS-01", "bob"),
        session_manager.heartbeat(alice.session_id),
        return_exceptions=True,
    )

    assert takeover.taken_over
    assert takeover.previous_session.session_id == alice.session_id
    # The heartbeat either landed before the takeover or saw it
    assert isinstance(heartbeat, SessionTakenOver) or heartbeat.session_id == alice.session_id
    assert await open_session_count(database, line.ws1) == 0
    with pytest.raises(SessionTakenOver):
        await session_manager.heartbeat(alice.session_id)


@pytest.mark.asyncio
async def test_takeover_racing_login_keeps_one_session(session_manager, database, line):
    await session_manager.login("WS-01", "alice")

    results = await asyncio.gather(
        session_manager.takeover("WS-01", "bob"),
        session_manager.login("WS-01", "bob"),
        session_manager.login("WS-01", "carol"),
        return_exceptions=True,
    )

    takeover, logins = results[0], results[1:]
    assert takeover.taken_over
    assert all(isinstance(r, SessionConflict) or r.active for r in logins)
    assert sum(1 for r in logins if not isinstance(r, Exception)) <= 1
    assert await open_session_count(database, line.ws1) <= 1


@pytest.mark.asyncio
async def test_stale_session_expires_on_check(session_manager, database, line):
    old = await session_manager.login("WS-01", "alice")
    await age_session(database, old.session_id, hours=3)

    check = await session_manager.check_session("WS-01")

    assert check.can_login
    assert check.expired_session.session_id == old.session_id
    assert check.message == "Previous session timeout, can login"
    assert isinstance(check.expired_session.termination, Expired)
    assert await open_session_count(database, line.ws1) == 0

    new = await session_manager.login("WS-01", "bob")
    assert new.session_id != old.session_id


@pytest.mark.asyncio
async def test_heartbeat_updates_last_activity(session_manager, line):
    info = await session_manager.login("WS-01", "alice")
    renewed = await session_manager.heartbeat(info.session_id)
    assert renewed.last_activity >= info.last_activity
    assert renewed.active


@pytest.mark.asyncio
async def test_heartbeat_unknown_session(session_manager, line):
    with pytest.raises(SessionNotFound) as exc_info:
        await session_manager.heartbeat("no-such-session")
    payload = exc_info.value.to_dict()
    assert payload["error"] == "SESSION_TERMINATED"
    assert payload["shouldLogout"] is True


@pytest.mark.asyncio
async def test_heartbeat_after_timeout_expires_session(session_manager, database, line):
    info = await session_manager.login("WS-01", "alice")
    await age_session(database, info.session_id, hours=3)

    with pytest.raises(SessionNotFound):
        await session_manager.heartbeat(info.session_id)

    async with database.read() as db:
        row = (
            await db.execute(select(WorkstationSession).where(WorkstationSession.session_id == info.session_id))
        ).scalars().one()
        assert row.active is False
        assert row.termination_reason == TerminationReason.EXPIRED


@pytest.mark.asyncio
async def test_heartbeat_after_takeover_reports_taken_over(session_manager, line):
    info = await session_manager.login("WS-01", "alice")
    await session_manager.takeover("WS-01", "bob")

    for _ in range(2):
        with pytest.raises(SessionTakenOver) as exc_info:
            await session_manager.heartbeat(info.session_id)
        payload = exc_info.value.to_dict()
        assert payload["error"] == "SESSION_TAKEN_OVER"
        assert payload["takenOverBy"] == "bob"
        assert payload["shouldLogout"] is True


@pytest.mark.asyncio
async def test_takeover_closes_open_session(session_manager, database, fake_gateway, line):
    await session_manager.login("WS-01", "alice")

    result = await session_manager.takeover("WS-01", "bob")

    assert result.taken_over
    assert result.can_proceed
    assert result.previous_session.username == "alice"
    assert isinstance(result.previous_session.termination, TakenOver)
    assert result.previous_session.termination.by == "bob"
    assert await open_session_count(database, line.ws1) == 0
    assert len(fake_gateway.requests_to("/workstation/logout")) == 1

    info = await session_manager.login("WS-01", "bob")
    assert info.username == "bob"


@pytest.mark.asyncio
async def test_takeover_dry_run_changes_nothing(session_manager, database, line):
    info = await session_manager.login("WS-01", "alice")

    result = await session_manager.takeover("WS-01", "bob", force_logout=False)

    assert not result.taken_over
    assert not result.can_proceed
    assert result.previous_session.session_id == info.session_id
    assert await open_session_count(database, line.ws1) == 1


@pytest.mark.asyncio
async def test_takeover_without_session_can_proceed(session_manager, line):
    result = await session_manager.takeover("WS-01", "bob")
    assert result.can_proceed
    assert not result.taken_over
    assert result.previous_session is None


@pytest.mark.asyncio
async def test_logout_by_session_id(session_manager, database, fake_gateway, line):
    info = await session_manager.login("WS-01", "alice")

    result = await session_manager.logout(session_id=info.session_id)

    assert result.logged_out
    assert result.gateway_notified
    assert isinstance(result.session.termination, LoggedOut)
    assert result.session.termination.by == "alice"
    async with database.read() as db:
        workstation = await db.get(Workstation, line.ws1)
        assert workstation.status == WorkstationStatus.OFFLINE
    [notice] = fake_gateway.requests_to("/workstation/logout")
    assert json.loads(notice.content) == {
        "workstationId": "WS-01",
        "sessionId": info.session_id,
        "reason": "normal_logout",
    }


@pytest.mark.asyncio
async def test_logout_by_workstation_is_idempotent(session_manager, line):
    await session_manager.login("WS-01", "alice")

    first = await session_manager.logout(workstation_id="WS-01")
    second = await session_manager.logout(workstation_id="WS-01")

    assert first.logged_out
    assert not second.logged_out
    assert second.message == "No active session found"


@pytest.mark.asyncio
async def test_logout_survives_gateway_failure(session_manager, fake_gateway, line):
    info = await session_manager.login("WS-01", "alice")
    fake_gateway.handler = lambda request: httpx.Response(500, text="boom")

    result = await session_manager.logout(session_id=info.session_id)

    assert result.logged_out
    assert not result.gateway_notified


@pytest.mark.asyncio
async def test_logout_requires_an_identifier(session_manager, line):
    with pytest.raises(ValidationError):
        await session_manager.logout()


@pytest.mark.asyncio
async def test_heartbeat_after_logout_is_terminated(session_manager, line):
    info = await session_manager.login("WS-01", "alice")
    await session_manager.logout(session_id=info.session_id)
    with pytest.raises(SessionNotFound):
        await session_manager.heartbeat(info.session_id)

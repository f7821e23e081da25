import pytest
from prometheus_client import REGISTRY

from mesflow.core.database.db import on_commit
from mesflow.core.exceptions import OrderTerminal


def transitions(to_status):
    value = REGISTRY.get_sample_value("mesflow_order_transitions_total", {"to_status": to_status})
    return value or 0.0


@pytest.mark.asyncio
async def test_on_commit_runs_after_commit_only(database):
    calls = []

    async with database.transaction() as db:
        on_commit(db, lambda: calls.append("committed"))
        assert calls == []
    assert calls == ["committed"]

    with pytest.raises(RuntimeError):
        async with database.transaction() as db:
            on_commit(db, lambda: calls.append("rolled back"))
            raise RuntimeError("abort")
    assert calls == ["committed"]


@pytest.mark.asyncio
async def test_order_transition_counted_once_committed(order_service, line):
    before = transitions("CANCELLED")

    await order_service.cancel_order(line.order, "supervisor")
    assert transitions("CANCELLED") == before + 1

    with pytest.raises(OrderTerminal):
        await order_service.cancel_order(line.order, "supervisor")
    assert transitions("CANCELLED") == before + 1

import asyncio
import contextlib
from datetime import timedelta
from typing import Any

import pytest
from roombooking import sweep
from roombooking.models import ReservationStatus


@pytest.mark.asyncio
async def test_run_sweep_expires_and_audits(store, uow_factory, broadcaster, monkeypatch, at) -> None:
    room = store.add_room()
    owner = store.add_user("2024000")
    # Real clock: anything that ended before now is expired.
    finished = store.add_reservation(room, owner, *at(-24 * 365))
    calls: list[dict[str, Any]] = []
    monkeypatch.setattr(sweep, "emit_audit_log", lambda **kwargs: calls.append(kwargs))

    count = await sweep.run_sweep(uow_factory, broadcaster)

    assert count == 1
    assert finished.status == ReservationStatus.DONE
    assert calls[0]["action"] == "reservation.expired"
    assert calls[0]["initiator"] == "system"
    assert broadcaster.names(f"room:{room.id}") == ["reservation:cancelled"]


@pytest.mark.asyncio
async def test_run_sweep_survives_audit_failure(store, uow_factory, broadcaster, monkeypatch, at) -> None:
    room = store.add_room()
    owner = store.add_user("2024000")
    store.add_reservation(room, owner, *at(-24 * 365))

    def failing_emit(**kwargs: Any) -> None:
        raise RuntimeError("fail log")

    monkeypatch.setattr(sweep, "emit_audit_log", failing_emit)
    assert await sweep.run_sweep(uow_factory, broadcaster) == 1


@pytest.mark.asyncio
async def test_sweep_forever_keeps_running_after_store_errors(store, uow_factory, broadcaster) -> None:
    store.fail("reservations.expire_finished", times=2)

    task = asyncio.create_task(sweep.sweep_forever(uow_factory, broadcaster, interval_seconds=0))
    for _ in range(50):
        await asyncio.sleep(0)
        if store.commits:
            break
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task

    assert store.commits >= 1
    assert store.failures["reservations.expire_finished"] == 0


@pytest.mark.asyncio
async def test_nothing_to_expire(uow_factory, broadcaster, store, now) -> None:
    room = store.add_room()
    owner = store.add_user("2024000")
    store.add_reservation(room, owner, now + timedelta(days=3650), now + timedelta(days=3650, hours=1))
    assert await sweep.run_sweep(uow_factory, broadcaster) == 0
    assert broadcaster.published == []

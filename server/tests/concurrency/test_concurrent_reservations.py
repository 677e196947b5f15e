"""Concurrency tests for reservation admission."""

import asyncio

import pytest
from sqlalchemy import select

from gearbook.models import Reservation, ReservationStatus, TransferRequest
from gearbook.schemas.admission import Admitted, Conflict
from gearbook.services.quota_service import QuotaService
from gearbook.services.reservation_service import ReservationService
from gearbook.services.transfer_service import TransferService
from tests.support import GUILD_ID, USER_A, USER_B, USER_C, at


@pytest.mark.asyncio
async def test_concurrent_identical_requests_admit_exactly_one(session_factory, clock, resource):
    """Two sessions booking the same window: one wins, the other sees the conflict."""

    async def book(user_id: int):
        async with session_factory() as session:
            outcome = await ReservationService(session, clock).create_reservation(
                GUILD_ID, user_id, [], resource.id, at(24), at(26)
            )
            return outcome.result

    results = await asyncio.gather(book(USER_A), book(USER_B))

    assert sorted(type(r).__name__ for r in results) == ["Admitted", "Conflict"]
    assert sum(isinstance(r, Admitted) for r in results) == 1
    assert sum(isinstance(r, Conflict) for r in results) == 1

    async with session_factory() as session:
        rows = list((await session.execute(select(Reservation))).scalars())
    assert len(rows) == 1
    assert rows[0].status == ReservationStatus.CONFIRMED


@pytest.mark.asyncio
async def test_concurrent_overlapping_requests_never_double_book(session_factory, clock, resource):
    windows = [(at(24), at(26)), (at(25), at(27)), (at(25.5), at(26.5)), (at(23), at(24.5))]

    async def book(index: int):
        start, end = windows[index]
        async with session_factory() as session:
            outcome = await ReservationService(session, clock).create_reservation(
                GUILD_ID, USER_A + index, [], resource.id, start, end
            )
            return outcome.created

    created = await asyncio.gather(*(book(i) for i in range(len(windows))))

    async with session_factory() as session:
        rows = list(
            (
                await session.execute(
                    select(Reservation)
                    .where(Reservation.status == ReservationStatus.CONFIRMED)
                    .order_by(Reservation.start_time)
                )
            ).scalars()
        )

    assert len(rows) == sum(created)
    for earlier, later in zip(rows, rows[1:]):
        assert earlier.end_time <= later.start_time


@pytest.mark.asyncio
async def test_concurrent_quota_checks_respect_active_limit(session_factory, clock, resource, plain_resource):
    async with session_factory() as session:
        await QuotaService(session, clock).upsert_base(GUILD_ID, max_active_count=1)

    targets = [(resource.id, at(24), at(26)), (plain_resource.id, at(48), at(50))]

    async def book(target):
        resource_id, start, end = target
        async with session_factory() as session:
            outcome = await ReservationService(session, clock).create_reservation(
                GUILD_ID, USER_C, [], resource_id, start, end
            )
            return outcome.created

    created = await asyncio.gather(*(book(t) for t in targets))

    assert sum(created) == 1


@pytest.mark.asyncio
async def test_concurrent_transfer_requests_leave_one_pending(session_factory, clock, resource):
    async with session_factory() as session:
        outcome = await ReservationService(session, clock).create_reservation(
            GUILD_ID, USER_A, [], resource.id, at(24), at(26)
        )
        reservation_id = outcome.reservation.id

    async def request(to_user_id: int):
        async with session_factory() as session:
            try:
                await TransferService(session, clock).create_transfer(reservation_id, USER_A, to_user_id, USER_A)
                return True
            except Exception:
                return False

    results = await asyncio.gather(request(USER_B), request(USER_C))

    assert sum(results) == 1
    async with session_factory() as session:
        pending = list(
            (
                await session.execute(
                    select(TransferRequest).where(TransferRequest.reservation_id == reservation_id)
                )
            ).scalars()
        )
    assert len(pending) == 1

"""Unit tests for the reservation lifecycle."""

import pytest
from sqlalchemy import select

from gearbook.core.exceptions import (
    AlreadyReturnedError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ReturnCorrectionClosedError,
)
from gearbook.models import QuotaOverrideAudit, ReservationAction, ReservationLog, ReservationStatus
from gearbook.schemas.admission import Conflict, ExceededActiveCount
from gearbook.services.quota_service import QuotaService
from gearbook.services.reservation_service import ReservationService
from tests.support import ADMIN, GUILD_ID, USER_A, USER_B, at


@pytest.mark.asyncio
async def test_create_reservation(test_session, clock, resource):
    service = ReservationService(test_session, clock)

    outcome = await service.create_reservation(
        GUILD_ID, USER_A, [], resource.id, at(24), at(26), location="Front desk"
    )

    assert outcome.created
    assert outcome.result.is_admitted
    reservation = outcome.reservation
    assert reservation.user_id == USER_A
    assert reservation.status == ReservationStatus.CONFIRMED
    assert reservation.location == "Front desk"
    assert reservation.created_at == clock.now()

    history = await service.history(reservation.id)
    assert [entry.action for entry in history] == [ReservationAction.RESERVE]


@pytest.mark.asyncio
async def test_create_in_another_guild_is_not_found(test_session, clock, resource):
    with pytest.raises(NotFoundError):
        await ReservationService(test_session, clock).create_reservation(
            GUILD_ID + 1, USER_A, [], resource.id, at(24), at(26)
        )


@pytest.mark.asyncio
async def test_conflicting_create_inserts_nothing(test_session, clock, resource):
    service = ReservationService(test_session, clock)
    await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(24), at(26))

    outcome = await service.create_reservation(GUILD_ID, USER_B, [], resource.id, at(25), at(27))

    assert isinstance(outcome.result, Conflict)
    assert outcome.reservation is None
    assert len(await service.list_for_resource(resource.id)) == 1


@pytest.mark.asyncio
async def test_admin_override_books_past_quota_and_is_audited(test_session, clock, resource):
    await QuotaService(test_session, clock).upsert_base(GUILD_ID, max_active_count=0)
    service = ReservationService(test_session, clock)

    rejected = await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(24), at(26))
    overridden = await service.create_reservation(
        GUILD_ID,
        USER_A,
        [],
        resource.id,
        at(24),
        at(26),
        override_by_user_id=ADMIN,
        override_reason="Workshop instructor",
    )

    assert isinstance(rejected.result, ExceededActiveCount)
    assert not rejected.created
    assert overridden.created
    assert overridden.quota_overridden
    assert isinstance(overridden.result, ExceededActiveCount)

    audits = list((await test_session.execute(select(QuotaOverrideAudit))).scalars())
    assert len(audits) == 1
    assert audits[0].acted_by_user_id == ADMIN
    assert audits[0].rejection_code == "exceeded_active_count"
    assert audits[0].reservation_id == overridden.reservation.id


@pytest.mark.asyncio
async def test_admin_override_cannot_book_over_a_conflict(test_session, clock, resource):
    service = ReservationService(test_session, clock)
    await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(24), at(26))

    outcome = await service.create_reservation(
        GUILD_ID, USER_B, [], resource.id, at(25), at(27), override_by_user_id=ADMIN
    )

    assert isinstance(outcome.result, Conflict)
    assert not outcome.created


@pytest.mark.asyncio
async def test_edit_ignores_the_reservation_itself(test_session, clock, resource):
    service = ReservationService(test_session, clock)
    created = await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(24), at(26))

    outcome = await service.edit_reservation(created.reservation.id, USER_A, [], at(25), at(27))

    assert outcome.result.is_admitted
    assert outcome.reservation.start_time == at(25)
    assert outcome.reservation.end_time == at(27)


@pytest.mark.asyncio
async def test_edit_into_another_booking_is_rejected(test_session, clock, resource):
    service = ReservationService(test_session, clock)
    first = await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(24), at(26))
    await service.create_reservation(GUILD_ID, USER_B, [], resource.id, at(28), at(30))

    outcome = await service.edit_reservation(first.reservation.id, USER_A, [], at(27), at(29))

    assert isinstance(outcome.result, Conflict)
    unchanged = await service.get_reservation_or_raise(first.reservation.id)
    assert unchanged.start_time == at(24)


@pytest.mark.asyncio
async def test_cancel_frees_window_and_is_idempotent(test_session, clock, resource):
    service = ReservationService(test_session, clock)
    created = await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(24), at(26))

    freed = await service.cancel_reservation(created.reservation.id, USER_A)
    again = await service.cancel_reservation(created.reservation.id, USER_A)

    assert freed.resource_id == resource.id
    assert (freed.start, freed.end) == (at(24), at(26))
    assert again is None

    rebooked = await service.create_reservation(GUILD_ID, USER_B, [], resource.id, at(24), at(26))
    assert rebooked.created


@pytest.mark.asyncio
async def test_cannot_edit_or_return_cancelled(test_session, clock, resource):
    service = ReservationService(test_session, clock)
    created = await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(24), at(26))
    await service.cancel_reservation(created.reservation.id, USER_A)

    with pytest.raises(InvalidTransitionError):
        await service.edit_reservation(created.reservation.id, USER_A, [], at(25), at(27))
    with pytest.raises(InvalidTransitionError):
        await service.return_reservation(created.reservation.id, USER_A)


@pytest.mark.asyncio
async def test_early_return_frees_remainder(test_session, clock, resource):
    service = ReservationService(test_session, clock)
    created = await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(1), at(5))
    clock.set(at(2))

    freed = await service.return_reservation(created.reservation.id, USER_A, return_location="Shelf B")

    assert (freed.start, freed.end) == (at(2), at(5))
    reservation = await service.get_reservation_or_raise(created.reservation.id)
    assert reservation.returned_at == at(2)
    assert reservation.return_location == "Shelf B"

    rebooked = await service.create_reservation(GUILD_ID, USER_B, [], resource.id, at(3), at(5))
    assert rebooked.created

    with pytest.raises(AlreadyReturnedError):
        await service.return_reservation(created.reservation.id, USER_A)


@pytest.mark.asyncio
async def test_late_return_frees_nothing(test_session, clock, resource):
    service = ReservationService(test_session, clock)
    created = await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(1), at(2))
    clock.set(at(3))

    assert await service.return_reservation(created.reservation.id, USER_A) is None


@pytest.mark.asyncio
async def test_correct_return_within_window(test_session, clock, resource):
    service = ReservationService(test_session, clock)
    created = await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(1), at(5))
    clock.set(at(2))
    await service.return_reservation(created.reservation.id, USER_A)
    clock.advance(hours=1)

    corrected = await service.correct_return(created.reservation.id, USER_A)

    assert corrected.returned_at is None
    history = await service.history(created.reservation.id)
    assert history[-1].action == ReservationAction.RETURN_CORRECTED


@pytest.mark.asyncio
async def test_correct_return_after_window_is_refused(test_session, clock, resource):
    service = ReservationService(test_session, clock)
    created = await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(1), at(5))
    clock.set(at(2))
    await service.return_reservation(created.reservation.id, USER_A)
    clock.advance(minutes=61)

    with pytest.raises(ReturnCorrectionClosedError):
        await service.correct_return(created.reservation.id, USER_A)


@pytest.mark.asyncio
async def test_correct_return_closes_before_next_reservation(test_session, clock, resource):
    service = ReservationService(test_session, clock)
    created = await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(1), at(3))
    clock.set(at(2))
    await service.return_reservation(created.reservation.id, USER_A)
    await service.create_reservation(GUILD_ID, USER_B, [], resource.id, at(3), at(4))
    # Next reservation at 3h closes corrections at 2h45m
    clock.set(at(2, minutes=50))

    with pytest.raises(ReturnCorrectionClosedError):
        await service.correct_return(created.reservation.id, USER_A)


@pytest.mark.asyncio
async def test_correct_return_refused_when_freed_time_was_rebooked(test_session, clock, resource):
    service = ReservationService(test_session, clock)
    created = await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(1), at(5))
    clock.set(at(2))
    await service.return_reservation(created.reservation.id, USER_A)
    rebooked = await service.create_reservation(GUILD_ID, USER_B, [], resource.id, at(4), at(5))
    clock.set(at(2, minutes=10))

    # The next reservation starts at 4h, so the window is still open, but the time is taken
    with pytest.raises(ConflictError) as exc_info:
        await service.correct_return(created.reservation.id, USER_A)

    taken = exc_info.value.problem_details["conflicting_resource"]["reservation_ids"]
    assert taken == [str(rebooked.reservation.id)]


@pytest.mark.asyncio
async def test_log_records_actor(test_session, clock, resource):
    service = ReservationService(test_session, clock)
    created = await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(24), at(26))
    clock.advance(minutes=5)
    await service.cancel_reservation(created.reservation.id, ADMIN, as_admin=True)

    logs = list(
        (
            await test_session.execute(
                select(ReservationLog)
                .where(ReservationLog.reservation_id == created.reservation.id)
                .order_by(ReservationLog.created_at)
            )
        ).scalars()
    )
    assert [log.action for log in logs] == [ReservationAction.RESERVE, ReservationAction.CANCEL]
    assert logs[-1].user_id == ADMIN
    assert logs[-1].new_status == ReservationStatus.CANCELLED


@pytest.mark.asyncio
async def test_only_the_holder_changes_a_reservation(test_session, clock, resource):
    service = ReservationService(test_session, clock)
    created = await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(1), at(5))
    reservation_id = created.reservation.id

    with pytest.raises(ForbiddenError):
        await service.edit_reservation(reservation_id, USER_B, [], at(2), at(6))
    with pytest.raises(ForbiddenError):
        await service.cancel_reservation(reservation_id, USER_B)

    clock.set(at(2))
    with pytest.raises(ForbiddenError) as exc_info:
        await service.return_reservation(reservation_id, USER_B)
    assert exc_info.value.problem_details["code"] == "NOT_PERMITTED"

    await service.return_reservation(reservation_id, USER_A)
    with pytest.raises(ForbiddenError):
        await service.correct_return(reservation_id, USER_B)

    reservation = await service.get_reservation_or_raise(reservation_id)
    assert reservation.status == ReservationStatus.CONFIRMED
    assert (reservation.start_time, reservation.end_time) == (at(1), at(5))
    assert reservation.returned_at == at(2)


@pytest.mark.asyncio
async def test_admin_may_cancel_and_return_for_the_holder(test_session, clock, resource):
    service = ReservationService(test_session, clock)
    cancelled = await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(24), at(26))
    returned = await service.create_reservation(GUILD_ID, USER_A, [], resource.id, at(1), at(5))
    clock.set(at(2))

    assert await service.cancel_reservation(cancelled.reservation.id, ADMIN, as_admin=True) is not None
    assert await service.return_reservation(returned.reservation.id, ADMIN, as_admin=True) is not None
    corrected = await service.correct_return(returned.reservation.id, ADMIN, as_admin=True)

    assert corrected.returned_at is None
    # Moving a booking re-runs admission with the mover's roles, so admins cannot edit
    with pytest.raises(ForbiddenError):
        await service.edit_reservation(returned.reservation.id, ADMIN, [], at(2), at(6))

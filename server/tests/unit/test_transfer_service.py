"""Unit tests for the transfer state machine."""

from datetime import timedelta

import pytest

from gearbook.core.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    TransferAlreadyPendingError,
    TransferExpiredError,
    ValidationError,
)
from gearbook.models import ReservationAction, TransferStatus
from gearbook.services.reservation_service import ReservationService
from gearbook.services.transfer_service import TransferService, can_transition
from tests.support import ADMIN, GUILD_ID, USER_A, USER_B, USER_C, at


@pytest.fixture
def reservation_factory(test_session, clock, resource):
    async def _create(user_id=USER_A, start_hours=24, end_hours=26):
        outcome = await ReservationService(test_session, clock).create_reservation(
            GUILD_ID, user_id, [], resource.id, at(start_hours), at(end_hours)
        )
        return outcome.reservation

    return _create


def test_only_pending_has_outgoing_transitions():
    for target in TransferStatus:
        if target == TransferStatus.PENDING:
            continue
        assert can_transition(TransferStatus.PENDING, target)
        for terminal in TransferStatus:
            if terminal != TransferStatus.PENDING:
                assert not can_transition(terminal, target)


@pytest.mark.asyncio
async def test_accept_reassigns_reservation(test_session, clock, reservation_factory):
    reservation = await reservation_factory()
    service = TransferService(test_session, clock)

    transfer = await service.create_transfer(reservation.id, USER_A, USER_B, USER_A, note="Enjoy")
    assert transfer.status == TransferStatus.PENDING
    assert transfer.expires_at == clock.now() + timedelta(hours=3)

    clock.advance(minutes=5)
    accepted = await service.update_status(transfer.id, TransferStatus.ACCEPTED, USER_B)

    assert accepted.status == TransferStatus.ACCEPTED
    reservation = await ReservationService(test_session, clock).get_reservation_or_raise(reservation.id)
    assert reservation.user_id == USER_B

    history = await ReservationService(test_session, clock).history(reservation.id)
    assert history[-1].action == ReservationAction.TRANSFER
    assert "Enjoy" in history[-1].notes


@pytest.mark.asyncio
async def test_terminal_transfer_cannot_change_again(test_session, clock, reservation_factory):
    reservation = await reservation_factory()
    service = TransferService(test_session, clock)
    transfer = await service.create_transfer(reservation.id, USER_A, USER_B, USER_A)
    await service.update_status(transfer.id, TransferStatus.ACCEPTED, USER_B)

    with pytest.raises(InvalidTransitionError) as exc_info:
        await service.update_status(transfer.id, TransferStatus.DENIED, USER_B)

    assert exc_info.value.problem_details["code"] == "INVALID_TRANSITION"
    assert exc_info.value.problem_details["current_status"] == "accepted"


@pytest.mark.asyncio
async def test_only_one_pending_transfer_per_reservation(test_session, clock, reservation_factory):
    reservation = await reservation_factory()
    service = TransferService(test_session, clock)
    first = await service.create_transfer(reservation.id, USER_A, USER_B, USER_A)

    with pytest.raises(TransferAlreadyPendingError) as exc_info:
        await service.create_transfer(reservation.id, USER_A, USER_C, USER_A)

    assert exc_info.value.problem_details["code"] == "ALREADY_PENDING"

    # Once the first one is settled a new request is allowed
    await service.update_status(first.id, TransferStatus.DENIED, USER_B)
    second = await service.create_transfer(reservation.id, USER_A, USER_C, USER_A)
    assert second.status == TransferStatus.PENDING


@pytest.mark.asyncio
async def test_create_validation(test_session, clock, reservation_factory):
    reservation = await reservation_factory()
    service = TransferService(test_session, clock)

    with pytest.raises(ValidationError):
        await service.create_transfer(reservation.id, USER_A, USER_A, USER_A)
    with pytest.raises(ValidationError):
        await service.create_transfer(reservation.id, USER_A, USER_B, USER_A, note="x" * 501)
    with pytest.raises(ValidationError):
        await service.create_transfer(reservation.id, USER_A, USER_B, USER_A, execute_at=at(-1))
    with pytest.raises(ValidationError):
        await service.create_transfer(reservation.id, USER_C, USER_B, USER_C)


@pytest.mark.asyncio
async def test_cannot_transfer_cancelled_reservation(test_session, clock, reservation_factory):
    reservation = await reservation_factory()
    await ReservationService(test_session, clock).cancel_reservation(reservation.id, USER_A)

    with pytest.raises(InvalidTransitionError):
        await TransferService(test_session, clock).create_transfer(reservation.id, USER_A, USER_B, USER_A)


@pytest.mark.asyncio
async def test_late_accept_expires_transfer(test_session, clock, reservation_factory):
    reservation = await reservation_factory()
    service = TransferService(test_session, clock)
    transfer = await service.create_transfer(reservation.id, USER_A, USER_B, USER_A)
    clock.advance(hours=3)

    with pytest.raises(TransferExpiredError) as exc_info:
        await service.update_status(transfer.id, TransferStatus.ACCEPTED, USER_B)

    assert exc_info.value.status_code == 410
    transfer = await service.get_transfer_or_raise(transfer.id)
    assert transfer.status == TransferStatus.EXPIRED
    unchanged = await ReservationService(test_session, clock).get_reservation_or_raise(reservation.id)
    assert unchanged.user_id == USER_A


@pytest.mark.asyncio
async def test_cancel_records_actor(test_session, clock, reservation_factory):
    reservation = await reservation_factory()
    service = TransferService(test_session, clock)
    transfer = await service.create_transfer(reservation.id, USER_A, USER_B, USER_A)

    canceled = await service.update_status(transfer.id, TransferStatus.CANCELED, USER_A)

    assert canceled.status == TransferStatus.CANCELED
    assert canceled.canceled_by_user_id == USER_A
    assert canceled.canceled_at == clock.now()


@pytest.mark.asyncio
async def test_cancelling_reservation_cancels_pending_transfer(test_session, clock, reservation_factory):
    reservation = await reservation_factory()
    service = TransferService(test_session, clock)
    transfer = await service.create_transfer(reservation.id, USER_A, USER_B, USER_A)

    await ReservationService(test_session, clock).cancel_reservation(reservation.id, ADMIN, as_admin=True)

    await test_session.refresh(transfer)
    assert transfer.status == TransferStatus.CANCELED
    assert transfer.canceled_by_user_id == ADMIN
    assert await service.get_pending_for_reservation(reservation.id) is None


@pytest.mark.asyncio
async def test_scheduled_transfer_executes_when_due(test_session, clock, reservation_factory):
    reservation = await reservation_factory()
    service = TransferService(test_session, clock)
    transfer = await service.create_transfer(
        reservation.id, USER_A, USER_B, ADMIN, execute_at=at(2), as_admin=True
    )
    assert transfer.expires_at == at(3)

    early = await service.execute_due()
    clock.set(at(2))
    due = await service.execute_due()

    assert early == {"executed": [], "expired": []}
    assert due["executed"] == [transfer.id]
    assert transfer.status == TransferStatus.ACCEPTED
    reservation = await ReservationService(test_session, clock).get_reservation_or_raise(reservation.id)
    assert reservation.user_id == USER_B


@pytest.mark.asyncio
async def test_scheduled_transfer_expires_when_reservation_ended(test_session, clock, reservation_factory):
    reservation = await reservation_factory(start_hours=24, end_hours=26)
    service = TransferService(test_session, clock)
    transfer = await service.create_transfer(reservation.id, USER_A, USER_B, USER_A, execute_at=at(27))

    clock.set(at(27))
    outcome = await service.execute_due()

    assert outcome == {"executed": [], "expired": [transfer.id]}
    unchanged = await ReservationService(test_session, clock).get_reservation_or_raise(reservation.id)
    assert unchanged.user_id == USER_A


@pytest.mark.asyncio
async def test_scheduled_transfer_expires_when_reservation_returned(test_session, clock, reservation_factory):
    reservation = await reservation_factory(start_hours=1, end_hours=5)
    service = TransferService(test_session, clock)
    transfer = await service.create_transfer(reservation.id, USER_A, USER_B, USER_A, execute_at=at(3))

    clock.set(at(2))
    await ReservationService(test_session, clock).return_reservation(reservation.id, USER_A)
    clock.set(at(3))
    outcome = await service.execute_due()

    assert outcome == {"executed": [], "expired": [transfer.id]}
    assert transfer.status == TransferStatus.EXPIRED


@pytest.mark.asyncio
async def test_expire_stale_immediate_requests(test_session, clock, reservation_factory):
    reservation = await reservation_factory()
    service = TransferService(test_session, clock)
    transfer = await service.create_transfer(reservation.id, USER_A, USER_B, USER_A)

    clock.advance(hours=2, minutes=59)
    assert await service.expire_stale() == []
    clock.advance(minutes=1)
    assert await service.expire_stale() == [transfer.id]
    assert transfer.status == TransferStatus.EXPIRED


@pytest.mark.asyncio
async def test_transfers_for_user(test_session, clock, reservation_factory):
    reservation = await reservation_factory()
    service = TransferService(test_session, clock)
    transfer = await service.create_transfer(reservation.id, USER_A, USER_B, USER_A)

    assert [t.id for t in await service.get_transfers_for_user(USER_A)] == [transfer.id]
    assert [t.id for t in await service.get_transfers_for_user(USER_B)] == [transfer.id]
    assert await service.get_transfers_for_user(USER_C) == []


@pytest.mark.asyncio
async def test_only_the_holder_may_offer_a_transfer(test_session, clock, reservation_factory):
    reservation = await reservation_factory()
    service = TransferService(test_session, clock)

    with pytest.raises(ForbiddenError) as exc_info:
        await service.create_transfer(reservation.id, USER_A, USER_C, USER_B)

    assert exc_info.value.status_code == 403
    assert exc_info.value.problem_details["actor_user_id"] == USER_B
    assert await service.get_pending_for_reservation(reservation.id) is None

    by_admin = await service.create_transfer(reservation.id, USER_A, USER_C, ADMIN, as_admin=True)
    assert by_admin.requested_by_user_id == ADMIN


@pytest.mark.asyncio
async def test_only_the_recipient_answers(test_session, clock, reservation_factory):
    reservation = await reservation_factory()
    service = TransferService(test_session, clock)
    transfer = await service.create_transfer(reservation.id, USER_A, USER_B, USER_A)

    for actor, answer in [
        (USER_C, TransferStatus.ACCEPTED),
        (USER_C, TransferStatus.DENIED),
        (USER_A, TransferStatus.ACCEPTED),
        (USER_A, TransferStatus.DENIED),
    ]:
        with pytest.raises(ForbiddenError):
            await service.update_status(transfer.id, answer, actor)

    # Admin rights do not let anyone answer on the recipient's behalf
    with pytest.raises(ForbiddenError):
        await service.update_status(transfer.id, TransferStatus.ACCEPTED, ADMIN, as_admin=True)

    assert transfer.status == TransferStatus.PENDING
    unchanged = await ReservationService(test_session, clock).get_reservation_or_raise(reservation.id)
    assert unchanged.user_id == USER_A


@pytest.mark.asyncio
async def test_recipient_and_strangers_cannot_cancel(test_session, clock, reservation_factory):
    reservation = await reservation_factory()
    service = TransferService(test_session, clock)
    transfer = await service.create_transfer(reservation.id, USER_A, USER_B, USER_A)

    with pytest.raises(ForbiddenError):
        await service.update_status(transfer.id, TransferStatus.CANCELED, USER_B)
    with pytest.raises(ForbiddenError):
        await service.update_status(transfer.id, TransferStatus.CANCELED, USER_C)
    with pytest.raises(ForbiddenError):
        await service.update_status(transfer.id, TransferStatus.EXPIRED, USER_A)

    assert transfer.status == TransferStatus.PENDING


@pytest.mark.asyncio
async def test_requester_or_admin_may_cancel(test_session, clock, reservation_factory):
    first = await reservation_factory(start_hours=24, end_hours=26)
    second = await reservation_factory(start_hours=30, end_hours=32)
    service = TransferService(test_session, clock)
    by_admin = await service.create_transfer(first.id, USER_A, USER_B, ADMIN, as_admin=True)
    plain = await service.create_transfer(second.id, USER_A, USER_B, USER_A)

    # The admin who filed the request withdraws it without the admin flag
    withdrawn = await service.update_status(by_admin.id, TransferStatus.CANCELED, ADMIN)
    overruled = await service.update_status(plain.id, TransferStatus.CANCELED, USER_C, as_admin=True)

    assert withdrawn.canceled_by_user_id == ADMIN
    assert overruled.status == TransferStatus.CANCELED
    assert overruled.canceled_by_user_id == USER_C


@pytest.mark.asyncio
async def test_scheduled_transfer_past_its_grace_period_expires(test_session, clock, reservation_factory):
    reservation = await reservation_factory()
    service = TransferService(test_session, clock)
    transfer = await service.create_transfer(reservation.id, USER_A, USER_B, USER_A, execute_at=at(2))

    # The worker was down from before execute_at until after expires_at
    clock.set(at(3))
    outcome = await service.execute_due()

    assert outcome == {"executed": [], "expired": [transfer.id]}
    assert transfer.status == TransferStatus.EXPIRED
    unchanged = await ReservationService(test_session, clock).get_reservation_or_raise(reservation.id)
    assert unchanged.user_id == USER_A


@pytest.mark.asyncio
async def test_execute_due_failure_does_not_stop_the_batch(
    test_session, clock, resource, plain_resource, monkeypatch
):
    reservations = ReservationService(test_session, clock)
    broken = (await reservations.create_reservation(
        GUILD_ID, USER_A, [], resource.id, at(24), at(26)
    )).reservation
    healthy = (await reservations.create_reservation(
        GUILD_ID, USER_A, [], plain_resource.id, at(24), at(26)
    )).reservation
    service = TransferService(test_session, clock)
    stuck = await service.create_transfer(broken.id, USER_A, USER_B, USER_A, execute_at=at(2))
    runs = await service.create_transfer(healthy.id, USER_A, USER_C, USER_A, execute_at=at(2))
    stuck_id, runs_id = stuck.id, runs.id
    broken_id, healthy_id = broken.id, healthy.id

    reassign = service._reassign

    def failing_reassign(reservation, transfer, actor_user_id, now):
        if reservation.id == broken_id:
            raise RuntimeError("lost connection")
        return reassign(reservation, transfer, actor_user_id, now)

    monkeypatch.setattr(service, "_reassign", failing_reassign)
    clock.set(at(2))
    outcome = await service.execute_due()

    assert outcome == {"executed": [runs_id], "expired": []}
    assert (await service.get_transfer_or_raise(stuck_id)).status == TransferStatus.PENDING
    assert (await reservations.get_reservation_or_raise(healthy_id)).user_id == USER_C
    assert (await reservations.get_reservation_or_raise(broken_id)).user_id == USER_A

"""Reservation router: admission checks and the reservation lifecycle."""

import logging
from typing import Optional

from fastapi import APIRouter
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock
from ..core.dependencies import Actor, CurrentActor, CurrentClock, DatabaseSession, parse_uuid
from ..schemas.reservation import (
    AdmissionResponse,
    CreateReservationRequest,
    CreateReservationResponse,
    EditReservationRequest,
    FreedWindow,
    ReleaseResponse,
    Reservation,
    ReservationActionRequest,
    ValidateReservationRequest,
)
from ..services.admission_service import AdmissionService
from ..services.reservation_service import FreedWindow as FreedWindowValue
from ..services.reservation_service import ReservationService
from ..services.resource_service import ResourceService
from ..services.waitlist_service import WaitlistService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/reservations", tags=["reservations"])


async def offer_freed_window(db: AsyncSession, clock: Clock, freed: Optional[FreedWindowValue]) -> Optional[str]:
    """Hand a freed window to the head of the resource's waitlist."""
    if freed is None:
        return None
    offer = await WaitlistService(db, clock).create_offer_for_freed_window(
        freed.resource_id, freed.start, freed.end, freed.guild_id
    )
    return str(offer.id) if offer else None


def _freed_to_schema(freed: Optional[FreedWindowValue]) -> Optional[FreedWindow]:
    if freed is None:
        return None
    return FreedWindow(resource_id=str(freed.resource_id), start=freed.start, end=freed.end)


@router.post("/validate", response_model=AdmissionResponse)
async def validate_reservation(
    request: ValidateReservationRequest,
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> AdmissionResponse:
    """Dry-run admission for the calling user."""
    resource = await ResourceService(db, clock).get_resource_or_raise(
        parse_uuid(request.resource_id, "resource_id"), request.guild_id
    )
    exclude_id = (
        parse_uuid(request.exclude_reservation_id, "exclude_reservation_id")
        if request.exclude_reservation_id
        else None
    )

    result = await AdmissionService(db, clock).validate(
        request.guild_id,
        actor.user_id,
        actor.role_ids,
        resource.id,
        resource.class_id,
        request.start,
        request.end,
        exclude_reservation_id=exclude_id,
    )
    return AdmissionResponse(result=result, message=result.describe())


@router.post("/create", response_model=CreateReservationResponse)
async def create_reservation(
    request: CreateReservationRequest,
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> CreateReservationResponse:
    """
    Book a resource.

    Policy rejections come back with 200 and the rejection in ``result``.
    Admins may book for another user and past quota rejections; both are audited.
    """
    if request.on_behalf_of_user_id is not None or request.override_quota:
        actor.require_admin("book for another user or override quotas")
    if request.on_behalf_of_user_id is not None:
        user_id, role_ids = request.on_behalf_of_user_id, []
    else:
        user_id, role_ids = actor.user_id, actor.role_ids

    outcome = await ReservationService(db, clock).create_reservation(
        guild_id=request.guild_id,
        user_id=user_id,
        role_ids=role_ids,
        resource_id=parse_uuid(request.resource_id, "resource_id"),
        start=request.start,
        end=request.end,
        location=request.location,
        override_by_user_id=actor.user_id if request.override_quota else None,
        override_reason=request.override_reason,
    )

    return CreateReservationResponse(
        result=outcome.result,
        message=outcome.result.describe(),
        reservation=Reservation.model_validate(outcome.reservation) if outcome.reservation else None,
        quota_overridden=outcome.quota_overridden,
    )


@router.post("/edit", response_model=CreateReservationResponse)
async def edit_reservation(
    request: EditReservationRequest,
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> CreateReservationResponse:
    """Move the caller's own reservation, re-admitted with the caller's roles."""
    outcome = await ReservationService(db, clock).edit_reservation(
        parse_uuid(request.reservation_id, "reservation_id"),
        actor.user_id,
        actor.role_ids,
        request.start,
        request.end,
    )
    return CreateReservationResponse(
        result=outcome.result,
        message=outcome.result.describe(),
        reservation=Reservation.model_validate(outcome.reservation) if outcome.reservation else None,
    )


@router.post("/cancel", response_model=ReleaseResponse)
async def cancel_reservation(
    request: ReservationActionRequest,
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> ReleaseResponse:
    """Cancel a reservation and offer the freed time to the waitlist."""
    service = ReservationService(db, clock)
    reservation_id = parse_uuid(request.reservation_id, "reservation_id")

    freed = await service.cancel_reservation(reservation_id, actor.user_id, as_admin=actor.is_admin)
    offer_id = await offer_freed_window(db, clock, freed)
    reservation = await service.get_reservation_or_raise(reservation_id)

    return ReleaseResponse(
        reservation=Reservation.model_validate(reservation),
        freed_window=_freed_to_schema(freed),
        offer_id=offer_id,
    )


@router.post("/return", response_model=ReleaseResponse)
async def return_reservation(
    request: ReservationActionRequest,
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> ReleaseResponse:
    """Return the resource; an early return offers the remainder to the waitlist."""
    service = ReservationService(db, clock)
    reservation_id = parse_uuid(request.reservation_id, "reservation_id")

    freed = await service.return_reservation(
        reservation_id, actor.user_id, request.return_location, as_admin=actor.is_admin
    )
    offer_id = await offer_freed_window(db, clock, freed)
    reservation = await service.get_reservation_or_raise(reservation_id)

    return ReleaseResponse(
        reservation=Reservation.model_validate(reservation),
        freed_window=_freed_to_schema(freed),
        offer_id=offer_id,
    )


@router.post("/correct-return", response_model=Reservation)
async def correct_return(
    request: ReservationActionRequest,
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> Reservation:
    reservation = await ReservationService(db, clock).correct_return(
        parse_uuid(request.reservation_id, "reservation_id"), actor.user_id, as_admin=actor.is_admin
    )
    return Reservation.model_validate(reservation)


@router.get("/resource/{resource_id}", response_model=list[Reservation])
async def list_resource_reservations(
    resource_id: str,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> list[Reservation]:
    reservations = await ReservationService(db, clock).list_for_resource(parse_uuid(resource_id, "resource_id"))
    return [Reservation.model_validate(r) for r in reservations]


@router.get("/{reservation_id}", response_model=Reservation)
async def get_reservation(
    reservation_id: str,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> Reservation:
    reservation = await ReservationService(db, clock).get_reservation_or_raise(
        parse_uuid(reservation_id, "reservation_id")
    )
    return Reservation.model_validate(reservation)

"""Transfer router: hand a reservation to another user, now or at a scheduled time."""

import logging
from typing import List

from fastapi import APIRouter, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock
from ..core.dependencies import Actor, CurrentActor, CurrentClock, DatabaseSession, parse_uuid
from ..core.exceptions import NotFoundError
from ..schemas.transfer import CreateTransferRequest, ExecuteDueResponse, Transfer, UpdateTransferStatusRequest
from ..services.reservation_service import ReservationService
from ..services.transfer_service import TransferService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/transfers", tags=["transfers"])


@router.post("/create", response_model=Transfer, status_code=201)
async def create_transfer(
    request: CreateTransferRequest,
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> Transfer:
    """
    Offer the caller's reservation to another user.

    Without ``execute_at`` the recipient must accept; with it the transfer
    runs by itself at that time. Admins may hand over any reservation.
    """
    reservation_id = parse_uuid(request.reservation_id, "reservation_id")
    reservation = await ReservationService(db, clock).get_reservation_or_raise(reservation_id)

    transfer = await TransferService(db, clock).create_transfer(
        reservation_id=reservation_id,
        from_user_id=reservation.user_id,
        to_user_id=request.to_user_id,
        requested_by_user_id=actor.user_id,
        execute_at=request.execute_at,
        note=request.note,
        as_admin=actor.is_admin,
    )
    return Transfer.model_validate(transfer)


@router.post("/update-status", response_model=Transfer)
async def update_transfer_status(
    request: UpdateTransferStatusRequest,
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> Transfer:
    transfer = await TransferService(db, clock).update_status(
        parse_uuid(request.transfer_id, "transfer_id"), request.status, actor.user_id, as_admin=actor.is_admin
    )
    return Transfer.model_validate(transfer)


@router.post("/execute-due", response_model=ExecuteDueResponse)
async def execute_due_transfers(
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> ExecuteDueResponse:
    """Run due scheduled transfers and expire unanswered immediate ones."""
    service = TransferService(db, clock)
    outcome = await service.execute_due()
    stale = await service.expire_stale()

    return ExecuteDueResponse(
        executed=[str(t) for t in outcome["executed"]],
        expired=[str(t) for t in outcome["expired"]],
        stale_expired=[str(t) for t in stale],
    )


@router.get("/reservation/{reservation_id}/pending", response_model=Transfer)
async def get_pending_transfer(
    reservation_id: str,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> Transfer:
    transfer = await TransferService(db, clock).get_pending_for_reservation(
        parse_uuid(reservation_id, "reservation_id")
    )
    if transfer is None:
        raise NotFoundError(resource_type="pending transfer", resource_id=reservation_id)
    return Transfer.model_validate(transfer)


@router.get("/mine", response_model=List[Transfer])
async def get_my_transfers(
    pending_only: bool = Query(True),
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> List[Transfer]:
    transfers = await TransferService(db, clock).get_transfers_for_user(actor.user_id, pending_only=pending_only)
    return [Transfer.model_validate(t) for t in transfers]


@router.get("/{transfer_id}", response_model=Transfer)
async def get_transfer(
    transfer_id: str,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> Transfer:
    transfer = await TransferService(db, clock).get_transfer_or_raise(parse_uuid(transfer_id, "transfer_id"))
    return Transfer.model_validate(transfer)
